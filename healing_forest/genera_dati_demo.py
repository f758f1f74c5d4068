from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import delete, select, update

from healing_forest.auth_models import Utente
from healing_forest.crediti import _accredita
from healing_forest.db import db_session
from healing_forest.models import (
    Appuntamento,
    ClasseBreatheMove,
    Credito,
    IscrizioneClasse,
    ListaAttesaClasse,
    MovimentoCredito,
    Notifica,
    PacchettoPaziente,
    Pagamento,
    Paziente,
    Professionista,
    PushToken,
    Servizio,
    SottoServizio,
    StatoAppuntamento,
    StatoPagamento,
    StatoPagamentoTx,
    TipoCredito,
    TipoNotifica,
)
from healing_forest.prenotazioni import slot_libero
from healing_forest.regole import GIORNI_LAVORATIVI, is_orario_lavorativo
from healing_forest.seed import seed_base
from healing_forest.services import init_db

logger = logging.getLogger(__name__)

# =========================
# Config generazione
# =========================
RANDOM_SEED = 42

NOMI = [
    "Santiago", "Mateo", "Sebastián", "Nicolás", "Samuel", "Alejandro", "Daniel", "Tomás",
    "Sofía", "Valentina", "Isabella", "Mariana", "Gabriela", "Daniela", "Luciana", "Camila",
]
COGNOMI = [
    "García", "Rodríguez", "Martínez", "López", "González", "Hernández", "Pérez", "Sánchez",
    "Ramírez", "Torres", "Vargas", "Castro", "Rojas", "Moreno", "Jiménez",
]

# Distribuzione affluenza per giorno della settimana (0=lun...6=dom)
AFFLUENZA_FATTORE = {0: 1.15, 1: 1.05, 2: 1.00, 3: 1.05, 4: 1.10, 5: 0.0, 6: 0.0}

METODI = ["carta", "carta", "pse", "contanti"]


@dataclass(frozen=True)
class RiepilogoDemo:
    pazienti: int
    appuntamenti: int
    pagamenti: int
    crediti: int


def _random_phone() -> str:
    return f"3{random.randint(0, 2)}{random.randint(0, 9)}{random.randint(1000000, 9999999)}"


def _random_email(nome: str, cognome: str, n: int) -> str:
    domains = ["gmail.com", "outlook.com", "hotmail.com", "icloud.com"]
    pulito = f"{nome}.{cognome}".lower().translate(str.maketrans("áéíóú", "aeiou"))
    return f"{pulito}{n}@{random.choice(domains)}"


def reset_db() -> None:
    """Cancella i dati operativi (mantiene schema e catalogo)."""
    with db_session() as s:
        # ordine importante per vincoli FK
        for model in (
            Notifica, PushToken, MovimentoCredito, Credito, Pagamento,
            ListaAttesaClasse, IscrizioneClasse, PacchettoPaziente, ClasseBreatheMove, Appuntamento,
        ):
            s.execute(delete(model))
        # i pazienti con account restano, senza più crediti
        con_account = select(Utente.paziente_id).where(Utente.paziente_id.is_not(None))
        s.execute(delete(Paziente).where(Paziente.id.not_in(con_account)))
        s.execute(update(Paziente).values(saldo_crediti=0))


def seed_pazienti(n: int) -> list[str]:
    """Crea n pazienti demo; email e documento non collidono con quelli già nel DB."""
    ids: list[str] = []
    with db_session() as s:
        emails = set(s.scalars(select(Paziente.email).where(Paziente.email.is_not(None))))
        documenti = set(s.scalars(select(Paziente.documento).where(Paziente.documento.is_not(None))))

        progressivo = 0
        for _ in range(n):
            nome, cognome = random.choice(NOMI), random.choice(COGNOMI)
            email = _random_email(nome, cognome, progressivo)
            while email in emails:
                progressivo += 1
                email = _random_email(nome, cognome, progressivo)
            progressivo += 1
            documento = str(random.randint(10**9, 10**10 - 1))
            while documento in documenti:
                documento = str(random.randint(10**9, 10**10 - 1))
            emails.add(email)
            documenti.add(documento)

            p = Paziente(
                nome=nome,
                cognome=cognome,
                data_nascita=date.today() - timedelta(days=random.randint(18 * 365, 75 * 365)),
                telefono=_random_phone(),
                email=email,
                documento=documento,
            )
            s.add(p)
            s.flush()
            ids.append(p.id)
    return ids


def _stato_per_data(giorno: date, oggi: date) -> StatoAppuntamento:
    delta = (oggi - giorno).days
    if delta >= 1:
        r = random.random()
        if r < 0.85:
            return StatoAppuntamento.COMPLETATO
        if r < 0.93:
            return StatoAppuntamento.ANNULLATO
        return StatoAppuntamento.NON_PRESENTATO
    return StatoAppuntamento.CONFERMATO


def genera_appuntamenti(pazienti_ids: list[str], giorni: int, adesso: datetime) -> tuple[int, int, int]:
    """Appuntamenti degli ultimi `giorni` giorni, senza sovrapposizioni per professionista."""
    n_app = n_pag = n_cred = 0
    oggi = adesso.date()

    with db_session() as s:
        professionisti = list(s.scalars(select(Professionista).where(Professionista.attivo.is_(True))))
        voci = s.execute(select(SottoServizio, Servizio).join(Servizio)).all()
        if not professionisti or not voci or not pazienti_ids:
            raise RuntimeError("Mancano dati base (professionisti/servizi/pazienti). Esegui seed_base.")

        giorno = oggi - timedelta(days=giorni)
        while giorno < oggi:
            fattore = AFFLUENZA_FATTORE.get(giorno.weekday(), 1.0)
            if giorno.weekday() not in GIORNI_LAVORATIVI or fattore <= 0:
                giorno += timedelta(days=1)
                continue

            for prof in professionisti:
                t = datetime.combine(giorno, time(9, 0))
                while t.hour < 18:
                    ss, sv = random.choice(voci)
                    fine = t + timedelta(minutes=ss.durata_minuti)
                    if random.random() > 0.55 * fattore or not is_orario_lavorativo(t, fine):
                        t += timedelta(minutes=30)
                        continue
                    # senza reset il professionista può avere già appuntamenti
                    if not slot_libero(s, prof.id, None, t, fine):
                        t += timedelta(minutes=30)
                        continue

                    stato = _stato_per_data(giorno, oggi)
                    app = Appuntamento(
                        paziente_id=random.choice(pazienti_ids),
                        professionista_id=prof.id,
                        servizio_id=sv.id,
                        sotto_servizio_id=ss.id,
                        inizio=t,
                        fine=fine,
                        stato=stato,
                        importo=ss.prezzo,
                    )
                    s.add(app)
                    s.flush()
                    n_app += 1

                    if stato == StatoAppuntamento.COMPLETATO:
                        metodo = random.choice(METODI)
                        s.add(
                            Pagamento(
                                paziente_id=app.paziente_id,
                                appuntamento_id=app.id,
                                importo=ss.prezzo,
                                metodo=metodo,
                                stato=StatoPagamentoTx.COMPLETATO,
                                creato_il=fine,
                                elaborato_il=fine,
                            )
                        )
                        app.stato_pagamento = StatoPagamento.PAGATO
                        app.metodo_pagamento = metodo
                        n_pag += 1
                    elif stato == StatoAppuntamento.ANNULLATO:
                        app.annullato_il = t - timedelta(hours=random.choice([2, 8, 30, 72]))
                        app.motivo_annullamento = "Impegno personale"
                        app.stato_pagamento = StatoPagamento.ANNULLATO
                        if random.random() < 0.5:
                            _accredita(
                                s, app.paziente_id, ss.prezzo / 2, TipoCredito.CANCELLAZIONE,
                                descrizione="Credito per cancellazione (demo)", appuntamento_id=app.id,
                                adesso=app.annullato_il,
                            )
                            n_cred += 1
                        s.add(
                            Notifica(
                                tipo=TipoNotifica.ANNULLAMENTO,
                                messaggio=f"Appuntamento annullato per {t:%d/%m/%Y %H:%M}.",
                                paziente_id=app.paziente_id,
                                appuntamento_id=app.id,
                            )
                        )
                    t = fine
            giorno += timedelta(days=1)

    return n_app, n_pag, n_cred


def main(pazienti: int = 60, giorni: int = 90, reset: bool = True, adesso: datetime | None = None) -> RiepilogoDemo:
    random.seed(RANDOM_SEED)

    init_db()
    if reset:
        reset_db()
    seed_base()

    ids = seed_pazienti(pazienti)
    n_app, n_pag, n_cred = genera_appuntamenti(ids, giorni, adesso or datetime.now())

    logger.info("Dati demo: %d pazienti, %d appuntamenti, %d pagamenti, %d crediti", len(ids), n_app, n_pag, n_cred)
    return RiepilogoDemo(len(ids), n_app, n_pag, n_cred)


if __name__ == "__main__":
    from healing_forest.config import setup_logging

    setup_logging()
    r = main(reset=True)
    print(f"OK: {r.pazienti} pazienti, {r.appuntamenti} appuntamenti degli ultimi 90 giorni.")
