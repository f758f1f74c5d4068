from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from healing_forest.crediti import _accredita, _usa_crediti
from healing_forest.db import db_session
from healing_forest.eccezioni import ConflittoPrenotazione, NonTrovato, PermessoNegato, RegolaViolata
from healing_forest.models import (
    Appuntamento,
    Paziente,
    Professionista,
    Servizio,
    SottoServizio,
    Spazio,
    StatoAppuntamento,
    StatoPagamento,
    TipoCredito,
    TipoNotifica,
)
from healing_forest.notifiche import _notifica
from healing_forest.regole import (
    DURATA_MAX_MINUTI,
    DURATA_MIN_MINUTI,
    MAX_APPUNTAMENTI_AL_GIORNO,
    MAX_APPUNTAMENTI_PENDENTI,
    MAX_GIORNI_ANTICIPO,
    ORARIO_APERTURA,
    ORARIO_CHIUSURA,
    ORE_MINIME_PRENOTAZIONE,
    ORE_MINIME_RIPROGRAMMAZIONE,
    arrotonda,
    calcola_credito_cancellazione,
    is_orario_lavorativo,
    ore_mancanti,
)

logger = logging.getLogger(__name__)

STATI_ATTIVI = (StatoAppuntamento.PENDENTE, StatoAppuntamento.CONFERMATO)


@dataclass(frozen=True)
class EsitoPrenotazione:
    ok: bool
    appuntamento_id: str | None
    importo: Decimal
    crediti_usati: Decimal
    messaggio: str


@dataclass(frozen=True)
class EsitoAnnullamento:
    appuntamento_id: str
    credito_id: int | None
    importo_credito: Decimal
    percentuale: int
    messaggio: str


# =========================
# Disponibilità
# =========================
def slot_libero(
    s: Session,
    professionista_id: str,
    spazio_id: int | None,
    inizio: datetime,
    fine: datetime,
    escludi_id: str | None = None,
) -> bool:
    """Nessuna sovrapposizione [inizio, fine) con appuntamenti non annullati del professionista o dello spazio."""
    vincolo = Appuntamento.professionista_id == professionista_id
    if spazio_id is not None:
        vincolo = vincolo | (Appuntamento.spazio_id == spazio_id)

    q = select(Appuntamento.id).where(
        and_(
            Appuntamento.stato != StatoAppuntamento.ANNULLATO,
            Appuntamento.inizio < fine,
            Appuntamento.fine > inizio,
            vincolo,
        )
    )
    if escludi_id:
        q = q.where(Appuntamento.id != escludi_id)
    return s.execute(q.limit(1)).first() is None


def _durata_e_prezzo(s: Session, servizio_id: int, sotto_servizio_id: int | None) -> tuple[int, Decimal]:
    sv = s.get(Servizio, servizio_id)
    if not sv or not sv.attivo:
        raise NonTrovato("Servizio non trovato.")

    durata, prezzo = sv.durata_minuti, sv.prezzo
    if sotto_servizio_id is not None:
        ss = s.get(SottoServizio, sotto_servizio_id)
        if not ss or not ss.attivo or ss.servizio_id != servizio_id:
            raise NonTrovato("Sotto-servizio non valido per il servizio scelto.")
        durata, prezzo = ss.durata_minuti, ss.prezzo

    if not DURATA_MIN_MINUTI <= durata <= DURATA_MAX_MINUTI:
        raise RegolaViolata(f"Durata non valida: {durata} minuti.")
    return durata, arrotonda(prezzo)


def _valida_orario(inizio: datetime, fine: datetime, adesso: datetime, preavviso_ore: int = 0) -> None:
    if inizio <= adesso:
        raise RegolaViolata("Non è possibile prenotare nel passato.")
    if ore_mancanti(inizio, adesso) < preavviso_ore:
        raise RegolaViolata(f"Le prenotazioni vanno fatte con almeno {preavviso_ore} ore di anticipo.")
    if inizio > adesso + timedelta(days=MAX_GIORNI_ANTICIPO):
        raise RegolaViolata(f"Si può prenotare al massimo {MAX_GIORNI_ANTICIPO} giorni in anticipo.")
    if not is_orario_lavorativo(inizio, fine):
        raise RegolaViolata("Orario fuori dall'orario di apertura (lun-ven 9-18, pausa 13-14).")


def _valida_limite_giornaliero(
    s: Session, paziente_id: str, giorno: date, escludi_id: str | None = None
) -> None:
    inizio_giorno = datetime.combine(giorno, datetime.min.time())
    q = select(func.count(Appuntamento.id)).where(
        and_(
            Appuntamento.paziente_id == paziente_id,
            Appuntamento.stato.in_(STATI_ATTIVI),
            Appuntamento.inizio >= inizio_giorno,
            Appuntamento.inizio < inizio_giorno + timedelta(days=1),
        )
    )
    if escludi_id:
        q = q.where(Appuntamento.id != escludi_id)
    if s.execute(q).scalar_one() >= MAX_APPUNTAMENTI_AL_GIORNO:
        raise RegolaViolata(f"Massimo {MAX_APPUNTAMENTI_AL_GIORNO} appuntamenti al giorno per paziente.")


def slot_disponibili(
    professionista_id: str,
    giorno: date,
    servizio_id: int,
    sotto_servizio_id: int | None = None,
    spazio_id: int | None = None,
    passo_minuti: int = 30,
    adesso: datetime | None = None,
) -> list[str]:
    """Orari di inizio ("HH:MM") prenotabili nel giorno dato."""
    adesso = adesso or datetime.now()
    with db_session() as s:
        durata, _ = _durata_e_prezzo(s, servizio_id, sotto_servizio_id)

        out: list[str] = []
        t = datetime.combine(giorno, ORARIO_APERTURA)
        chiusura = datetime.combine(giorno, ORARIO_CHIUSURA)
        while t + timedelta(minutes=durata) <= chiusura:
            fine = t + timedelta(minutes=durata)
            if t > adesso and is_orario_lavorativo(t, fine) and slot_libero(s, professionista_id, spazio_id, t, fine):
                out.append(t.strftime("%H:%M"))
            t += timedelta(minutes=passo_minuti)
        return out


# =========================
# Prenotazione
# =========================
def prenota_appuntamento(
    paziente_id: str,
    professionista_id: str,
    servizio_id: int,
    inizio: datetime,
    sotto_servizio_id: int | None = None,
    spazio_id: int | None = None,
    note: str | None = None,
    usa_crediti: Decimal | int | float | str | None = None,
    adesso: datetime | None = None,
    preavviso: bool = True,
) -> EsitoPrenotazione:
    """
    Use case: prenotare un appuntamento.
    - durata e prezzo dal servizio (o sotto-servizio)
    - orario lavorativo, preavviso minimo (saltato per lo staff con preavviso=False), anticipo massimo
    - limite appuntamenti pendenti e appuntamenti al giorno
    - disponibilità professionista + spazio
    - crediti opzionali: se coprono tutto l'importo l'appuntamento risulta PAGATO
    """
    adesso = adesso or datetime.now()

    with db_session() as s:
        p = s.get(Paziente, paziente_id)
        if not p or not p.attivo:
            raise NonTrovato("Paziente non trovato.")
        prof = s.get(Professionista, professionista_id)
        if not prof or not prof.attivo:
            raise NonTrovato("Professionista non trovato.")
        if spazio_id is not None:
            sp = s.get(Spazio, spazio_id)
            if not sp or not sp.attivo:
                raise NonTrovato("Spazio non trovato.")

        durata, prezzo = _durata_e_prezzo(s, servizio_id, sotto_servizio_id)
        fine = inizio + timedelta(minutes=durata)
        _valida_orario(inizio, fine, adesso, ORE_MINIME_PRENOTAZIONE if preavviso else 0)

        pendenti = s.execute(
            select(func.count(Appuntamento.id)).where(
                and_(
                    Appuntamento.paziente_id == paziente_id,
                    Appuntamento.stato.in_(STATI_ATTIVI),
                    Appuntamento.inizio >= adesso,
                )
            )
        ).scalar_one()
        if pendenti >= MAX_APPUNTAMENTI_PENDENTI:
            raise RegolaViolata(f"Hai già {pendenti} appuntamenti in programma (massimo {MAX_APPUNTAMENTI_PENDENTI}).")
        _valida_limite_giornaliero(s, paziente_id, inizio.date())

        if not slot_libero(s, professionista_id, spazio_id, inizio, fine):
            raise ConflittoPrenotazione("Slot non disponibile (professionista o spazio occupati).")

        app = Appuntamento(
            paziente_id=paziente_id,
            professionista_id=professionista_id,
            servizio_id=servizio_id,
            sotto_servizio_id=sotto_servizio_id,
            spazio_id=spazio_id,
            inizio=inizio,
            fine=fine,
            stato=StatoAppuntamento.CONFERMATO,
            stato_pagamento=StatoPagamento.PENDENTE,
            importo=prezzo,
            crediti_usati=Decimal("0"),
            note=note,
        )
        s.add(app)
        s.flush()

        crediti = Decimal("0")
        if usa_crediti:
            crediti = min(arrotonda(usa_crediti), prezzo)
            _usa_crediti(
                s, paziente_id, crediti, appuntamento_id=app.id,
                descrizione=f"Appuntamento del {inizio:%d/%m/%Y %H:%M}", adesso=adesso,
            )
            app.crediti_usati = crediti
            if crediti >= prezzo:
                app.stato_pagamento = StatoPagamento.PAGATO
                app.metodo_pagamento = "crediti"

        _notifica(
            s, TipoNotifica.CONFERMA,
            f"Appuntamento confermato per {inizio:%d/%m/%Y %H:%M}.",
            paziente_id=paziente_id, titolo="Appuntamento confermato", appuntamento_id=app.id,
        )
        logger.info("Appuntamento %s prenotato per %s alle %s", app.id, paziente_id, inizio)
        return EsitoPrenotazione(True, app.id, prezzo, crediti, "Appuntamento confermato.")


def _appuntamento(s: Session, appuntamento_id: str, paziente_id: str | None = None) -> Appuntamento:
    app = s.get(Appuntamento, appuntamento_id)
    if not app:
        raise NonTrovato("Appuntamento non trovato.")
    if paziente_id is not None and app.paziente_id != paziente_id:
        raise PermessoNegato("L'appuntamento appartiene a un altro paziente.")
    return app


def annulla_appuntamento(
    appuntamento_id: str,
    motivo: str | None = None,
    adesso: datetime | None = None,
    paziente_id: str | None = None,
) -> EsitoAnnullamento:
    """
    Use case: annullare un appuntamento.
    Se era pagato (importo o crediti) genera un credito secondo la politica di cancellazione,
    nella stessa transazione dell'annullamento.
    """
    adesso = adesso or datetime.now()

    with db_session() as s:
        app = _appuntamento(s, appuntamento_id, paziente_id)
        if app.stato == StatoAppuntamento.ANNULLATO:
            raise RegolaViolata("Appuntamento già annullato.")
        if app.stato in (StatoAppuntamento.COMPLETATO, StatoAppuntamento.NON_PRESENTATO):
            raise RegolaViolata(f"Impossibile annullare un appuntamento {app.stato.value.lower()}.")

        pagato = app.importo if app.stato_pagamento == StatoPagamento.PAGATO else app.crediti_usati
        calcolo = calcola_credito_cancellazione(pagato or 0, app.inizio, adesso)

        app.stato = StatoAppuntamento.ANNULLATO
        app.motivo_annullamento = motivo
        app.annullato_il = adesso

        credito_id = None
        if calcolo.importo > 0:
            cr = _accredita(
                s, app.paziente_id, calcolo.importo, TipoCredito.CANCELLAZIONE,
                descrizione=f"Cancellazione appuntamento del {app.inizio:%d/%m/%Y %H:%M} ({calcolo.percentuale}%)",
                appuntamento_id=app.id, adesso=adesso,
            )
            credito_id = cr.id
            if app.stato_pagamento == StatoPagamento.PAGATO:
                app.stato_pagamento = StatoPagamento.RIMBORSATO
        if app.stato_pagamento == StatoPagamento.PENDENTE:
            app.stato_pagamento = StatoPagamento.ANNULLATO

        messaggio = calcolo.messaggio if pagato else "Appuntamento annullato."
        _notifica(
            s, TipoNotifica.ANNULLAMENTO,
            f"Appuntamento del {app.inizio:%d/%m/%Y %H:%M} annullato. Motivo: {motivo or 'n/d'}. {messaggio}",
            paziente_id=app.paziente_id, titolo="Appuntamento annullato", appuntamento_id=app.id,
        )
        logger.info("Appuntamento %s annullato (credito %s)", app.id, calcolo.importo)
        return EsitoAnnullamento(app.id, credito_id, calcolo.importo, calcolo.percentuale, messaggio)


def riprogramma_appuntamento(
    appuntamento_id: str,
    nuovo_inizio: datetime,
    adesso: datetime | None = None,
    paziente_id: str | None = None,
) -> None:
    adesso = adesso or datetime.now()

    with db_session() as s:
        app = _appuntamento(s, appuntamento_id, paziente_id)
        if app.stato not in STATI_ATTIVI:
            raise RegolaViolata("Si possono spostare solo appuntamenti in programma.")
        if ore_mancanti(app.inizio, adesso) < ORE_MINIME_RIPROGRAMMAZIONE:
            raise RegolaViolata(
                f"Gli appuntamenti si spostano con almeno {ORE_MINIME_RIPROGRAMMAZIONE} ore di anticipo."
            )

        durata = app.fine - app.inizio
        nuova_fine = nuovo_inizio + durata
        _valida_orario(nuovo_inizio, nuova_fine, adesso)
        _valida_limite_giornaliero(s, app.paziente_id, nuovo_inizio.date(), escludi_id=app.id)
        if not slot_libero(s, app.professionista_id, app.spazio_id, nuovo_inizio, nuova_fine, escludi_id=app.id):
            raise ConflittoPrenotazione("Il nuovo orario non è disponibile.")

        vecchio = app.inizio
        app.inizio = nuovo_inizio
        app.fine = nuova_fine
        app.promemoria_24h_il = None
        app.promemoria_2h_il = None

        _notifica(
            s, TipoNotifica.SPOSTAMENTO,
            f"Appuntamento spostato dal {vecchio:%d/%m/%Y %H:%M} al {nuovo_inizio:%d/%m/%Y %H:%M}.",
            paziente_id=app.paziente_id, titolo="Appuntamento spostato", appuntamento_id=app.id,
        )


def aggiorna_stato(appuntamento_id: str, stato: StatoAppuntamento) -> None:
    """Staff: conferma, completato, non presentato. L'annullamento passa da annulla_appuntamento."""
    if stato == StatoAppuntamento.ANNULLATO:
        raise RegolaViolata("Per annullare usare l'annullamento (gestisce i crediti).")

    with db_session() as s:
        app = _appuntamento(s, appuntamento_id)
        if app.stato == StatoAppuntamento.ANNULLATO:
            raise RegolaViolata("Appuntamento annullato: stato non modificabile.")
        app.stato = stato


def aggiorna_pagamento_appuntamento(
    appuntamento_id: str,
    stato_pagamento: StatoPagamento,
    metodo: str | None = None,
    riferimento: str | None = None,
) -> None:
    with db_session() as s:
        app = _appuntamento(s, appuntamento_id)
        app.stato_pagamento = stato_pagamento
        if metodo:
            app.metodo_pagamento = metodo
        if riferimento:
            app.riferimento_pagamento = riferimento


# =========================
# Letture (flat, safe per Streamlit/API)
# =========================
def _query_appuntamenti():
    return (
        select(Appuntamento, Paziente, Professionista, Servizio, SottoServizio, Spazio)
        .join(Paziente, Paziente.id == Appuntamento.paziente_id)
        .join(Professionista, Professionista.id == Appuntamento.professionista_id)
        .join(Servizio, Servizio.id == Appuntamento.servizio_id)
        .join(SottoServizio, SottoServizio.id == Appuntamento.sotto_servizio_id, isouter=True)
        .join(Spazio, Spazio.id == Appuntamento.spazio_id, isouter=True)
    )


def _app_dict(row) -> dict:
    app, p, prof, sv, ss, sp = row
    return {
        "id": app.id,
        "paziente_id": p.id,
        "paziente": p.nome_completo,
        "professionista_id": prof.id,
        "professionista": f"{prof.nome} {prof.cognome}",
        "servizio": sv.nome,
        "sotto_servizio": ss.nome if ss else None,
        "spazio": sp.nome if sp else None,
        "inizio": app.inizio.isoformat(),
        "fine": app.fine.isoformat(),
        "stato": app.stato.value,
        "stato_pagamento": app.stato_pagamento.value,
        "importo": float(app.importo),
        "crediti_usati": float(app.crediti_usati),
        "metodo_pagamento": app.metodo_pagamento,
        "note": app.note,
        "motivo_annullamento": app.motivo_annullamento,
    }


def appuntamento_flat(appuntamento_id: str) -> dict:
    with db_session() as s:
        row = s.execute(_query_appuntamenti().where(Appuntamento.id == appuntamento_id)).first()
        if not row:
            raise NonTrovato("Appuntamento non trovato.")
        return _app_dict(row)


def appuntamenti_paziente_flat(paziente_id: str, solo_futuri: bool = False, adesso: datetime | None = None) -> list[dict]:
    with db_session() as s:
        q = _query_appuntamenti().where(Appuntamento.paziente_id == paziente_id)
        if solo_futuri:
            q = q.where(
                Appuntamento.inizio >= (adesso or datetime.now()),
                Appuntamento.stato.in_(STATI_ATTIVI),
            )
        q = q.order_by(Appuntamento.inizio.desc())
        return [_app_dict(r) for r in s.execute(q).all()]


def agenda_giornaliera_flat(professionista_id: str, giorno: date) -> list[dict]:
    """
    Agenda del professionista per il giorno (dict serializzabili).
    Evita lazy-load e DetachedInstanceError.
    """
    start_day = datetime.combine(giorno, datetime.min.time())
    end_day = start_day + timedelta(days=1)

    with db_session() as s:
        q = (
            _query_appuntamenti()
            .where(
                and_(
                    Appuntamento.professionista_id == professionista_id,
                    Appuntamento.inizio >= start_day,
                    Appuntamento.inizio < end_day,
                    Appuntamento.stato != StatoAppuntamento.ANNULLATO,
                )
            )
            .order_by(Appuntamento.inizio.asc())
        )
        return [_app_dict(r) for r in s.execute(q).all()]


def appuntamenti_del_giorno_flat(giorno: date | None = None) -> list[dict]:
    giorno = giorno or date.today()
    start_day = datetime.combine(giorno, datetime.min.time())
    with db_session() as s:
        q = (
            _query_appuntamenti()
            .where(
                Appuntamento.inizio >= start_day,
                Appuntamento.inizio < start_day + timedelta(days=1),
                Appuntamento.stato != StatoAppuntamento.ANNULLATO,
            )
            .order_by(Appuntamento.inizio.asc())
        )
        return [_app_dict(r) for r in s.execute(q).all()]


def calendario_spazio_flat(spazio_id: int, dal: date, al: date) -> list[dict]:
    with db_session() as s:
        q = (
            _query_appuntamenti()
            .where(
                Appuntamento.spazio_id == spazio_id,
                Appuntamento.inizio >= datetime.combine(dal, datetime.min.time()),
                Appuntamento.inizio < datetime.combine(al, datetime.min.time()) + timedelta(days=1),
                Appuntamento.stato != StatoAppuntamento.ANNULLATO,
            )
            .order_by(Appuntamento.inizio.asc())
        )
        return [_app_dict(r) for r in s.execute(q).all()]


def lista_appuntamenti_flat(
    stato: StatoAppuntamento | None = None,
    professionista_id: str | None = None,
    paziente_id: str | None = None,
    dal: date | None = None,
    al: date | None = None,
    limit: int = 200,
) -> list[dict]:
    """Vista admin con filtri opzionali, più recenti prima."""
    with db_session() as s:
        q = _query_appuntamenti()
        if stato:
            q = q.where(Appuntamento.stato == stato)
        if professionista_id:
            q = q.where(Appuntamento.professionista_id == professionista_id)
        if paziente_id:
            q = q.where(Appuntamento.paziente_id == paziente_id)
        if dal:
            q = q.where(Appuntamento.inizio >= datetime.combine(dal, datetime.min.time()))
        if al:
            q = q.where(Appuntamento.inizio < datetime.combine(al, datetime.min.time()) + timedelta(days=1))
        q = q.order_by(Appuntamento.inizio.desc()).limit(limit)
        return [_app_dict(r) for r in s.execute(q).all()]
