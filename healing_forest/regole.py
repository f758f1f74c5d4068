"""
Regole di business del centro (politiche di cancellazione, orari, crediti, classi, pagamenti).

Sono costanti Python: i servizi le leggono direttamente, i test le usano come riferimento.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

CENTESIMI = Decimal("0.01")


def arrotonda(importo: Decimal | int | float | str) -> Decimal:
    return Decimal(str(importo)).quantize(CENTESIMI, rounding=ROUND_HALF_UP)


# =========================
# Cancellazioni
# =========================
# (ore minime di anticipo, percentuale di credito) in ordine decrescente
POLITICA_RIMBORSO: tuple[tuple[int, int], ...] = (
    (24, 100),
    (12, 50),
    (6, 25),
)


def ore_mancanti(inizio: datetime, adesso: datetime) -> float:
    return (inizio - adesso).total_seconds() / 3600


def percentuale_rimborso(ore: float) -> int:
    for soglia, percentuale in POLITICA_RIMBORSO:
        if ore >= soglia:
            return percentuale
    return 0


@dataclass(frozen=True)
class CalcoloCredito:
    importo: Decimal
    percentuale: int
    messaggio: str


def calcola_credito_cancellazione(importo: Decimal | int | float, inizio: datetime, adesso: datetime) -> CalcoloCredito:
    perc = percentuale_rimborso(ore_mancanti(inizio, adesso))
    credito = arrotonda(Decimal(str(importo)) * perc / 100)

    if perc == 100:
        msg = "Verrà accreditato il 100% dell'importo come credito."
    elif perc > 0:
        msg = f"Verrà accreditato il {perc}% dell'importo come credito."
    else:
        msg = f"Le cancellazioni con meno di {POLITICA_RIMBORSO[-1][0]} ore di anticipo non generano credito."
    return CalcoloCredito(importo=credito, percentuale=perc, messaggio=msg)


# =========================
# Appuntamenti
# =========================
ORARIO_APERTURA = time(9, 0)
ORARIO_CHIUSURA = time(18, 0)
PAUSA_PRANZO = (time(13, 0), time(14, 0))
GIORNI_LAVORATIVI = {0, 1, 2, 3, 4}  # lun-ven (datetime.weekday)

DURATA_DEFAULT_MINUTI = 60
DURATA_MIN_MINUTI = 30
DURATA_MAX_MINUTI = 180

MAX_GIORNI_ANTICIPO = 90
MAX_APPUNTAMENTI_PENDENTI = 5
MAX_APPUNTAMENTI_AL_GIORNO = 3
ORE_MINIME_PRENOTAZIONE = 24
ORE_MINIME_RIPROGRAMMAZIONE = 6


def is_orario_lavorativo(inizio: datetime, fine: datetime | None = None) -> bool:
    """
    True se [inizio, fine) cade in un giorno lavorativo, dentro l'orario
    di apertura e senza toccare la pausa pranzo.
    """
    fine = fine or inizio
    if inizio.weekday() not in GIORNI_LAVORATIVI or fine.date() != inizio.date():
        return False

    t_start, t_end = inizio.time(), fine.time()
    if t_start < ORARIO_APERTURA or t_end > ORARIO_CHIUSURA or t_start >= ORARIO_CHIUSURA:
        return False

    pranzo_inizio, pranzo_fine = PAUSA_PRANZO
    # sovrapposizione con la pausa [13,14)
    if t_start < pranzo_fine and (t_end > pranzo_inizio or t_start >= pranzo_inizio):
        return False
    return True


# =========================
# Crediti
# =========================
GIORNI_SCADENZA_CREDITI = 365
UTILIZZO_MINIMO_CREDITI = Decimal("10000")
UTILIZZO_MASSIMO_CREDITI: Decimal | None = None  # None = nessun limite


def scadenza_credito(da: datetime) -> datetime:
    return da + timedelta(days=GIORNI_SCADENZA_CREDITI)


# =========================
# Classi Breathe & Move
# =========================
DURATA_CLASSE_MINUTI = 50
CAPIENZA_DEFAULT = 12
GIORNI_SENZA_CLASSI = {6}  # domenica
ORE_CHIUSURA_ISCRIZIONI = 2
ORE_RESTITUZIONE_CLASSE = 2
MAX_CLASSI_AL_GIORNO = 1
NOTIFICHE_POSTO_LIBERO = 3


@dataclass(frozen=True)
class Pacchetto:
    codice: str
    nome: str
    prezzo: Decimal
    classi: int | None  # None = illimitato
    validita_giorni: int


PACCHETTI: dict[str, Pacchetto] = {
    p.codice: p
    for p in (
        Pacchetto("single", "1 Classe", Decimal("65000"), 1, 1),
        Pacchetto("week", "Settimana illimitata", Decimal("170000"), None, 7),
        Pacchetto("pack4", "4 Classi", Decimal("190000"), 4, 30),
        Pacchetto("pack8", "8 Classi", Decimal("350000"), 8, 60),
        Pacchetto("pack12", "12 Classi", Decimal("480000"), 12, 90),
        Pacchetto("pack24", "24 Classi", Decimal("720000"), 24, 180),
        Pacchetto("monthly", "Mensile illimitato", Decimal("450000"), None, 30),
    )
}

# Calendario settimanale standard (weekday, "HH:MM", classe, istruttore, intensità)
CALENDARIO_SETTIMANALE: tuple[tuple[int, str, str, str, str], ...] = (
    (0, "06:00", "StoneBarre", "Jenny", "media"),
    (0, "07:00", "FireRush", "Jenny", "alta"),
    (0, "08:00", "WildPower", "Clara", "alta"),
    (0, "17:00", "OmRoot", "Kata", "bassa"),
    (0, "18:00", "ForestFire", "Manuela", "media"),
    (1, "06:00", "WildPower", "Fernanda", "alta"),
    (1, "07:00", "BloomBeat", "Mayteck", "media"),
    (1, "09:00", "GutReboot", "Fernanda", "bassa"),
    (1, "17:00", "ForestFire", "Fernanda", "media"),
    (2, "06:00", "ForestFire", "Karo", "media"),
    (2, "08:00", "WindFlow", "Goura", "media"),
    (2, "10:00", "GutReboot", "Fernanda", "bassa"),
    (2, "19:00", "MoonRelief", "Mayteck", "bassa"),
    (3, "06:00", "StoneBarre", "Karo", "media"),
    (3, "09:00", "WildPower", "Fernanda", "alta"),
    (3, "19:00", "WaveMind", "Mayteck", "bassa"),
    (4, "06:00", "FireRush", "Jenny", "alta"),
    (4, "08:00", "ForestFire", "Clara", "media"),
    (4, "17:00", "WindFlow", "Goura", "media"),
    (5, "08:00", "StoneBarre", "Karo", "media"),
    (5, "10:00", "WildPower", "Clara", "alta"),
)


# =========================
# Pagamenti
# =========================
@dataclass(frozen=True)
class RegolaMetodo:
    abilitato: bool
    minimo: Decimal
    massimo: Decimal


METODI_PAGAMENTO: dict[str, RegolaMetodo] = {
    "carta": RegolaMetodo(True, Decimal("10000"), Decimal("10000000")),
    "pse": RegolaMetodo(True, Decimal("10000"), Decimal("50000000")),
    "contanti": RegolaMetodo(True, Decimal("0"), Decimal("1000000")),
    "crediti": RegolaMetodo(True, Decimal("0"), Decimal("50000000")),
}


# =========================
# Promemoria
# =========================
PROMEMORIA_APPUNTAMENTO_ORE = (24, 2)
PROMEMORIA_CLASSE_ORE = 2

# nessuna push tra le 22 e le 8: le notifiche restano pendenti
ORARIO_SILENZIOSO = (time(22, 0), time(8, 0))


def in_orario_silenzioso(adesso: datetime) -> bool:
    inizio, fine = ORARIO_SILENZIOSO
    return adesso.time() >= inizio or adesso.time() < fine
