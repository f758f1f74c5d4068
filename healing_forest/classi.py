"""
Classi di gruppo Breathe & Move: calendario, iscrizioni, pacchetti e lista d'attesa.

L'iscrizione blocca la riga della classe (SELECT ... FOR UPDATE dove il DB lo supporta)
e aggiorna il contatore `iscritti` nella stessa transazione del controllo di capienza.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from healing_forest.db import db_session
from healing_forest.eccezioni import ConflittoPrenotazione, NonTrovato, PermessoNegato, RegolaViolata
from healing_forest.models import (
    ClasseBreatheMove,
    IscrizioneClasse,
    ListaAttesaClasse,
    PacchettoPaziente,
    Paziente,
    StatoClasse,
    StatoIscrizione,
    StatoPagamento,
    TipoNotifica,
)
from healing_forest.notifiche import _notifica
from healing_forest.pagamenti import _nuovo_pagamento
from healing_forest.regole import (
    CALENDARIO_SETTIMANALE,
    CAPIENZA_DEFAULT,
    DURATA_CLASSE_MINUTI,
    GIORNI_SENZA_CLASSI,
    MAX_CLASSI_AL_GIORNO,
    NOTIFICHE_POSTO_LIBERO,
    ORE_CHIUSURA_ISCRIZIONI,
    ORE_RESTITUZIONE_CLASSE,
    PACCHETTI,
    ore_mancanti,
)

logger = logging.getLogger(__name__)

STATI_OCCUPANO_POSTO = (StatoIscrizione.ISCRITTO, StatoIscrizione.PRESENTE)


@dataclass(frozen=True)
class EsitoIscrizione:
    iscrizione_id: int
    pacchetto_id: int | None
    stato_pagamento: str
    messaggio: str


@dataclass(frozen=True)
class EsitoAnnullamentoIscrizione:
    iscrizione_id: int
    classe_restituita: bool
    avvisati_lista_attesa: int


# =========================
# Classi
# =========================
def _valida_giorno(inizio: datetime) -> None:
    if inizio.weekday() in GIORNI_SENZA_CLASSI:
        raise RegolaViolata("Nessuna classe la domenica.")


def _classe(s: Session, classe_id: str, blocca: bool = False) -> ClasseBreatheMove:
    c = s.get(ClasseBreatheMove, classe_id, with_for_update=True) if blocca else s.get(ClasseBreatheMove, classe_id)
    if not c:
        raise NonTrovato("Classe non trovata.")
    return c


def _nuova_classe(
    s: Session, nome: str, istruttore: str, inizio: datetime, max_capienza: int, intensita: str
) -> ClasseBreatheMove:
    c = ClasseBreatheMove(
        nome=nome,
        istruttore=istruttore,
        inizio=inizio,
        fine=inizio + timedelta(minutes=DURATA_CLASSE_MINUTI),
        max_capienza=max_capienza,
        iscritti=0,
        intensita=intensita,
    )
    s.add(c)
    return c


def crea_classe(
    nome: str,
    istruttore: str,
    inizio: datetime,
    max_capienza: int = CAPIENZA_DEFAULT,
    intensita: str = "media",
) -> str:
    _valida_giorno(inizio)
    if max_capienza <= 0:
        raise RegolaViolata("La capienza deve essere positiva.")

    with db_session() as s:
        esiste = s.execute(
            select(ClasseBreatheMove.id).where(ClasseBreatheMove.nome == nome, ClasseBreatheMove.inizio == inizio)
        ).first()
        if esiste:
            raise ConflittoPrenotazione(f"Classe {nome} già presente alle {inizio:%d/%m/%Y %H:%M}.")
        c = _nuova_classe(s, nome, istruttore, inizio, max_capienza, intensita)
        s.flush()
        return c.id


CAMPI_CLASSE = {"nome", "istruttore", "inizio", "max_capienza", "intensita"}


def aggiorna_classe(classe_id: str, **campi) -> None:
    if set(campi) - CAMPI_CLASSE:
        raise RegolaViolata("Campi classe non validi.")

    with db_session() as s:
        c = _classe(s, classe_id, blocca=True)
        if "inizio" in campi:
            _valida_giorno(campi["inizio"])
            c.fine = campi["inizio"] + timedelta(minutes=DURATA_CLASSE_MINUTI)
        if "max_capienza" in campi and campi["max_capienza"] < c.iscritti:
            raise RegolaViolata(f"Capienza inferiore agli iscritti ({c.iscritti}).")
        for k, v in campi.items():
            setattr(c, k, v)


def _restituisci_classe(s: Session, iscr: IscrizioneClasse) -> bool:
    if not iscr.pacchetto_id:
        return False
    pk = s.get(PacchettoPaziente, iscr.pacchetto_id)
    if not pk or pk.illimitato or not pk.attivo:
        return False
    pk.classi_rimanenti = (pk.classi_rimanenti or 0) + 1
    return True


def annulla_classe(classe_id: str, motivo: str | None = None, adesso: datetime | None = None) -> int:
    """Annulla la classe, restituisce le classi dei pacchetti e avvisa gli iscritti. Ritorna il numero di iscritti."""
    adesso = adesso or datetime.now()
    with db_session() as s:
        c = _classe(s, classe_id, blocca=True)
        if c.stato != StatoClasse.PROGRAMMATA:
            raise RegolaViolata("La classe non è programmata.")

        c.stato = StatoClasse.ANNULLATA
        iscrizioni = s.scalars(
            select(IscrizioneClasse).where(
                IscrizioneClasse.classe_id == c.id, IscrizioneClasse.stato == StatoIscrizione.ISCRITTO
            )
        ).all()
        for iscr in iscrizioni:
            iscr.stato = StatoIscrizione.ANNULLATO
            iscr.annullata_il = adesso
            _restituisci_classe(s, iscr)
            _notifica(
                s, TipoNotifica.ANNULLAMENTO,
                f"La classe {c.nome} del {c.inizio:%d/%m/%Y %H:%M} è stata annullata. Motivo: {motivo or 'n/d'}",
                paziente_id=iscr.paziente_id, titolo="Classe annullata", classe_id=c.id,
            )
        c.iscritti = 0
        for wl in list(c.lista_attesa):
            s.delete(wl)

        logger.info("Classe %s annullata, %d iscritti avvisati", c.id, len(iscrizioni))
        return len(iscrizioni)


def elimina_classe(classe_id: str) -> None:
    with db_session() as s:
        c = _classe(s, classe_id)
        attive = s.execute(
            select(func.count(IscrizioneClasse.id)).where(
                IscrizioneClasse.classe_id == c.id, IscrizioneClasse.stato.in_(STATI_OCCUPANO_POSTO)
            )
        ).scalar_one()
        if attive:
            raise RegolaViolata("La classe ha iscritti: annullarla invece di eliminarla.")
        s.delete(c)


def _classe_dict(c: ClasseBreatheMove) -> dict:
    return {
        "id": c.id,
        "nome": c.nome,
        "istruttore": c.istruttore,
        "inizio": c.inizio.isoformat(),
        "fine": c.fine.isoformat(),
        "max_capienza": c.max_capienza,
        "iscritti": c.iscritti,
        "posti_liberi": c.posti_liberi,
        "intensita": c.intensita,
        "stato": c.stato.value,
    }


def classe_flat(classe_id: str) -> dict:
    with db_session() as s:
        return _classe_dict(_classe(s, classe_id))


def lista_classi_flat(
    dal: date,
    al: date,
    nome: str | None = None,
    istruttore: str | None = None,
    solo_programmate: bool = True,
) -> list[dict]:
    with db_session() as s:
        q = select(ClasseBreatheMove).where(
            ClasseBreatheMove.inizio >= datetime.combine(dal, time.min),
            ClasseBreatheMove.inizio < datetime.combine(al, time.min) + timedelta(days=1),
        )
        if nome:
            q = q.where(ClasseBreatheMove.nome == nome)
        if istruttore:
            q = q.where(ClasseBreatheMove.istruttore == istruttore)
        if solo_programmate:
            q = q.where(ClasseBreatheMove.stato == StatoClasse.PROGRAMMATA)
        return [_classe_dict(c) for c in s.scalars(q.order_by(ClasseBreatheMove.inizio.asc()))]


def genera_calendario(giorni: int = 14, adesso: datetime | None = None) -> int:
    """
    Crea le classi del calendario settimanale per i prossimi `giorni` giorni.
    Salta domeniche, orari già passati e classi già presenti. Ritorna quante classi ha creato.
    """
    adesso = adesso or datetime.now()
    create = 0
    with db_session() as s:
        for offset in range(giorni):
            giorno = (adesso + timedelta(days=offset)).date()
            if giorno.weekday() in GIORNI_SENZA_CLASSI:
                continue
            for weekday, ora, nome, istruttore, intensita in CALENDARIO_SETTIMANALE:
                if weekday != giorno.weekday():
                    continue
                inizio = datetime.combine(giorno, time.fromisoformat(ora))
                if inizio <= adesso:
                    continue
                esiste = s.execute(
                    select(ClasseBreatheMove.id).where(
                        ClasseBreatheMove.nome == nome, ClasseBreatheMove.inizio == inizio
                    )
                ).first()
                if esiste:
                    continue
                _nuova_classe(s, nome, istruttore, inizio, CAPIENZA_DEFAULT, intensita)
                s.flush()
                create += 1

    logger.info("Calendario classi: %d nuove classi su %d giorni", create, giorni)
    return create


# =========================
# Pacchetti
# =========================
def catalogo_pacchetti() -> list[dict]:
    return [
        {
            "codice": p.codice,
            "nome": p.nome,
            "prezzo": float(p.prezzo),
            "classi": p.classi,
            "validita_giorni": p.validita_giorni,
        }
        for p in PACCHETTI.values()
    ]


def _pacchetto_attivo(s: Session, paziente_id: str, adesso: datetime) -> PacchettoPaziente | None:
    """Primo pacchetto valido in scadenza, con classi rimanenti o illimitato."""
    q = (
        select(PacchettoPaziente)
        .where(
            and_(
                PacchettoPaziente.paziente_id == paziente_id,
                PacchettoPaziente.attivo.is_(True),
                PacchettoPaziente.valido_dal <= adesso,
                PacchettoPaziente.valido_al > adesso,
                or_(PacchettoPaziente.classi_totali.is_(None), PacchettoPaziente.classi_rimanenti > 0),
            )
        )
        .order_by(PacchettoPaziente.valido_al.asc(), PacchettoPaziente.id.asc())
        .limit(1)
    )
    return s.scalars(q).first()


def _pacchetto_dict(pk: PacchettoPaziente) -> dict:
    info = PACCHETTI.get(pk.codice)
    return {
        "id": pk.id,
        "codice": pk.codice,
        "nome": info.nome if info else pk.codice,
        "classi_totali": pk.classi_totali,
        "classi_rimanenti": pk.classi_rimanenti,
        "valido_dal": pk.valido_dal.isoformat(),
        "valido_al": pk.valido_al.isoformat(),
        "attivo": pk.attivo,
    }


def pacchetto_attivo(paziente_id: str, adesso: datetime | None = None) -> dict | None:
    with db_session() as s:
        pk = _pacchetto_attivo(s, paziente_id, adesso or datetime.now())
        return _pacchetto_dict(pk) if pk else None


def pacchetti_paziente_flat(paziente_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(PacchettoPaziente)
            .where(PacchettoPaziente.paziente_id == paziente_id)
            .order_by(PacchettoPaziente.valido_dal.desc())
        )
        return [_pacchetto_dict(pk) for pk in rows]


def acquista_pacchetto(
    paziente_id: str,
    codice: str,
    metodo: str = "carta",
    riferimento: str | None = None,
    adesso: datetime | None = None,
) -> int:
    """Crea il pacchetto del paziente e il relativo pagamento. Ritorna l'id del pacchetto."""
    info = PACCHETTI.get(codice)
    if not info:
        raise NonTrovato(f"Pacchetto sconosciuto: {codice}.")
    adesso = adesso or datetime.now()

    with db_session() as s:
        if not s.get(Paziente, paziente_id):
            raise NonTrovato("Paziente non trovato.")

        pk = PacchettoPaziente(
            paziente_id=paziente_id,
            codice=info.codice,
            classi_totali=info.classi,
            classi_rimanenti=info.classi,
            valido_dal=adesso,
            valido_al=adesso + timedelta(days=info.validita_giorni),
        )
        s.add(pk)
        s.flush()

        _nuovo_pagamento(
            s, paziente_id, info.prezzo, metodo,
            pacchetto_id=pk.id, descrizione=f"Pacchetto {info.nome}", riferimento=riferimento, adesso=adesso,
        )
        logger.info("Pacchetto %s acquistato da %s", codice, paziente_id)
        return pk.id


# =========================
# Iscrizioni
# =========================
def iscrivi(paziente_id: str, classe_id: str, adesso: datetime | None = None) -> EsitoIscrizione:
    """
    Iscrive il paziente alla classe.
    Controlli nell'ordine: classe programmata e non iniziata, finestra di iscrizione,
    iscrizione doppia, limite giornaliero, capienza.
    """
    adesso = adesso or datetime.now()

    with db_session() as s:
        if not s.get(Paziente, paziente_id):
            raise NonTrovato("Paziente non trovato.")
        c = _classe(s, classe_id, blocca=True)

        if c.stato != StatoClasse.PROGRAMMATA or c.inizio <= adesso:
            raise RegolaViolata("La classe non è più disponibile.")
        if ore_mancanti(c.inizio, adesso) < ORE_CHIUSURA_ISCRIZIONI:
            raise RegolaViolata(f"Le iscrizioni chiudono {ORE_CHIUSURA_ISCRIZIONI} ore prima della classe.")

        iscr = s.execute(
            select(IscrizioneClasse).where(
                IscrizioneClasse.paziente_id == paziente_id, IscrizioneClasse.classe_id == c.id
            )
        ).scalar_one_or_none()
        if iscr and iscr.stato in STATI_OCCUPANO_POSTO:
            raise ConflittoPrenotazione("Sei già iscritto a questa classe.")

        inizio_giorno = datetime.combine(c.inizio.date(), time.min)
        stesso_giorno = s.execute(
            select(func.count(IscrizioneClasse.id))
            .join(ClasseBreatheMove, ClasseBreatheMove.id == IscrizioneClasse.classe_id)
            .where(
                IscrizioneClasse.paziente_id == paziente_id,
                IscrizioneClasse.stato.in_(STATI_OCCUPANO_POSTO),
                ClasseBreatheMove.stato != StatoClasse.ANNULLATA,
                ClasseBreatheMove.inizio >= inizio_giorno,
                ClasseBreatheMove.inizio < inizio_giorno + timedelta(days=1),
            )
        ).scalar_one()
        if stesso_giorno >= MAX_CLASSI_AL_GIORNO:
            raise RegolaViolata(f"Massimo {MAX_CLASSI_AL_GIORNO} classe al giorno.")

        if c.iscritti >= c.max_capienza:
            raise ConflittoPrenotazione("Classe piena.")

        pk = _pacchetto_attivo(s, paziente_id, adesso)
        if pk and not pk.illimitato:
            pk.classi_rimanenti -= 1

        if iscr is None:
            iscr = IscrizioneClasse(paziente_id=paziente_id, classe_id=c.id)
            s.add(iscr)
        iscr.stato = StatoIscrizione.ISCRITTO
        iscr.annullata_il = None
        iscr.pacchetto_id = pk.id if pk else None
        iscr.stato_pagamento = StatoPagamento.PAGATO if pk else StatoPagamento.PENDENTE
        c.iscritti += 1

        wl = s.execute(
            select(ListaAttesaClasse).where(
                ListaAttesaClasse.paziente_id == paziente_id, ListaAttesaClasse.classe_id == c.id
            )
        ).scalar_one_or_none()
        if wl:
            s.delete(wl)
            s.flush()
            _ricompatta_lista(s, c.id)

        s.flush()
        messaggio = "Iscrizione confermata." if pk else "Iscrizione confermata: pagamento da completare."
        logger.info("Paziente %s iscritto alla classe %s (%d/%d)", paziente_id, c.id, c.iscritti, c.max_capienza)
        return EsitoIscrizione(iscr.id, iscr.pacchetto_id, iscr.stato_pagamento.value, messaggio)


def annulla_iscrizione(
    iscrizione_id: int,
    adesso: datetime | None = None,
    paziente_id: str | None = None,
) -> EsitoAnnullamentoIscrizione:
    """
    Libera il posto. La classe torna nel pacchetto solo se si annulla in tempo;
    i primi in lista d'attesa ricevono un avviso di posto libero.
    """
    adesso = adesso or datetime.now()

    with db_session() as s:
        iscr = s.get(IscrizioneClasse, iscrizione_id)
        if not iscr:
            raise NonTrovato("Iscrizione non trovata.")
        if paziente_id is not None and iscr.paziente_id != paziente_id:
            raise PermessoNegato("L'iscrizione appartiene a un altro paziente.")
        if iscr.stato != StatoIscrizione.ISCRITTO:
            raise RegolaViolata("Iscrizione non attiva.")

        c = _classe(s, iscr.classe_id, blocca=True)
        if c.inizio <= adesso:
            raise RegolaViolata("La classe è già iniziata.")

        iscr.stato = StatoIscrizione.ANNULLATO
        iscr.annullata_il = adesso
        c.iscritti = max(0, c.iscritti - 1)

        restituita = False
        if ore_mancanti(c.inizio, adesso) >= ORE_RESTITUZIONE_CLASSE:
            restituita = _restituisci_classe(s, iscr)

        in_attesa = s.scalars(
            select(ListaAttesaClasse)
            .where(ListaAttesaClasse.classe_id == c.id)
            .order_by(ListaAttesaClasse.posizione.asc())
            .limit(NOTIFICHE_POSTO_LIBERO)
        ).all()
        for wl in in_attesa:
            _notifica(
                s, TipoNotifica.POSTO_LIBERO,
                f"Si è liberato un posto in {c.nome} del {c.inizio:%d/%m/%Y %H:%M}. Iscriviti subito!",
                paziente_id=wl.paziente_id, titolo="Posto libero", classe_id=c.id,
            )

        return EsitoAnnullamentoIscrizione(iscr.id, restituita, len(in_attesa))


def segna_presenza(iscrizione_id: int) -> None:
    with db_session() as s:
        iscr = s.get(IscrizioneClasse, iscrizione_id)
        if not iscr:
            raise NonTrovato("Iscrizione non trovata.")
        if iscr.stato != StatoIscrizione.ISCRITTO:
            raise RegolaViolata("Iscrizione non attiva.")
        iscr.stato = StatoIscrizione.PRESENTE


def iscrizioni_paziente_flat(paziente_id: str, solo_future: bool = False, adesso: datetime | None = None) -> list[dict]:
    with db_session() as s:
        q = (
            select(IscrizioneClasse, ClasseBreatheMove)
            .join(ClasseBreatheMove, ClasseBreatheMove.id == IscrizioneClasse.classe_id)
            .where(IscrizioneClasse.paziente_id == paziente_id)
        )
        if solo_future:
            q = q.where(
                ClasseBreatheMove.inizio >= (adesso or datetime.now()),
                IscrizioneClasse.stato == StatoIscrizione.ISCRITTO,
            )
        rows = s.execute(q.order_by(ClasseBreatheMove.inizio.desc())).all()
        return [
            {
                "id": i.id,
                "classe_id": c.id,
                "classe": c.nome,
                "istruttore": c.istruttore,
                "inizio": c.inizio.isoformat(),
                "stato": i.stato.value,
                "stato_pagamento": i.stato_pagamento.value,
                "pacchetto_id": i.pacchetto_id,
            }
            for i, c in rows
        ]


def partecipanti_classe_flat(classe_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(IscrizioneClasse, Paziente)
            .join(Paziente, Paziente.id == IscrizioneClasse.paziente_id)
            .where(IscrizioneClasse.classe_id == classe_id, IscrizioneClasse.stato.in_(STATI_OCCUPANO_POSTO))
            .order_by(Paziente.cognome, Paziente.nome)
        ).all()
        return [
            {
                "iscrizione_id": i.id,
                "paziente_id": p.id,
                "paziente": p.nome_completo,
                "telefono": p.telefono,
                "stato": i.stato.value,
                "stato_pagamento": i.stato_pagamento.value,
            }
            for i, p in rows
        ]


# =========================
# Lista d'attesa
# =========================
def _ricompatta_lista(s: Session, classe_id: str) -> None:
    rows = s.scalars(
        select(ListaAttesaClasse)
        .where(ListaAttesaClasse.classe_id == classe_id)
        .order_by(ListaAttesaClasse.posizione.asc(), ListaAttesaClasse.inserita_il.asc())
    ).all()
    for pos, wl in enumerate(rows, start=1):
        wl.posizione = pos


def entra_lista_attesa(paziente_id: str, classe_id: str) -> int:
    """Solo per classi piene. Ritorna la posizione in lista."""
    with db_session() as s:
        if not s.get(Paziente, paziente_id):
            raise NonTrovato("Paziente non trovato.")
        c = _classe(s, classe_id, blocca=True)
        if c.stato != StatoClasse.PROGRAMMATA:
            raise RegolaViolata("La classe non è programmata.")
        if c.posti_liberi > 0:
            raise RegolaViolata("Ci sono ancora posti liberi: iscriviti direttamente.")

        iscritto = s.execute(
            select(IscrizioneClasse.id).where(
                IscrizioneClasse.paziente_id == paziente_id,
                IscrizioneClasse.classe_id == c.id,
                IscrizioneClasse.stato.in_(STATI_OCCUPANO_POSTO),
            )
        ).first()
        if iscritto:
            raise ConflittoPrenotazione("Sei già iscritto a questa classe.")

        gia = s.execute(
            select(ListaAttesaClasse.id).where(
                ListaAttesaClasse.paziente_id == paziente_id, ListaAttesaClasse.classe_id == c.id
            )
        ).first()
        if gia:
            raise ConflittoPrenotazione("Sei già in lista d'attesa.")

        ultima = s.execute(
            select(func.max(ListaAttesaClasse.posizione)).where(ListaAttesaClasse.classe_id == c.id)
        ).scalar_one()
        wl = ListaAttesaClasse(paziente_id=paziente_id, classe_id=c.id, posizione=(ultima or 0) + 1)
        s.add(wl)
        s.flush()
        return wl.posizione


def esci_lista_attesa(paziente_id: str, classe_id: str) -> bool:
    with db_session() as s:
        wl = s.execute(
            select(ListaAttesaClasse).where(
                ListaAttesaClasse.paziente_id == paziente_id, ListaAttesaClasse.classe_id == classe_id
            )
        ).scalar_one_or_none()
        if not wl:
            return False
        s.delete(wl)
        s.flush()
        _ricompatta_lista(s, classe_id)
        return True


def lista_attesa_flat(classe_id: str) -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(ListaAttesaClasse, Paziente)
            .join(Paziente, Paziente.id == ListaAttesaClasse.paziente_id)
            .where(ListaAttesaClasse.classe_id == classe_id)
            .order_by(ListaAttesaClasse.posizione.asc())
        ).all()
        return [
            {
                "posizione": wl.posizione,
                "paziente_id": p.id,
                "paziente": p.nome_completo,
                "inserita_il": wl.inserita_il.isoformat(),
            }
            for wl, p in rows
        ]
