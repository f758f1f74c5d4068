"""
Pagamenti registrati dalla reception o dall'app.

Il centro non addebita nulla: un pagamento nasce PENDENTE, viene completato
(o fallisce) quando la transazione esterna è confermata, e può essere rimborsato
in denaro oppure come credito sul ledger del paziente.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from healing_forest.crediti import _accredita, _usa_crediti
from healing_forest.db import db_session
from healing_forest.eccezioni import NonTrovato, RegolaViolata
from healing_forest.models import (
    Appuntamento,
    PacchettoPaziente,
    Pagamento,
    Paziente,
    StatoPagamento,
    StatoPagamentoTx,
    TipoCredito,
    TipoNotifica,
)
from healing_forest.notifiche import _notifica
from healing_forest.regole import METODI_PAGAMENTO, arrotonda

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EsitoRimborso:
    pagamento_id: str
    importo: Decimal
    credito_id: int | None


def valida_metodo(metodo: str, importo: Decimal) -> None:
    regola = METODI_PAGAMENTO.get(metodo)
    if not regola or not regola.abilitato:
        raise RegolaViolata(f"Metodo di pagamento non disponibile: {metodo}.")
    if importo < regola.minimo or importo > regola.massimo:
        raise RegolaViolata(f"Importo {importo} fuori dai limiti per {metodo} ({regola.minimo} - {regola.massimo}).")


def _nuovo_pagamento(
    s: Session,
    paziente_id: str,
    importo: Decimal | int | float | str,
    metodo: str,
    appuntamento_id: str | None = None,
    pacchetto_id: int | None = None,
    descrizione: str | None = None,
    riferimento: str | None = None,
    adesso: datetime | None = None,
) -> Pagamento:
    """Crea il pagamento nella sessione. Con metodo 'crediti' scala il ledger e lo completa subito."""
    importo = arrotonda(importo)
    if importo <= 0:
        raise RegolaViolata("L'importo deve essere maggiore di zero.")
    valida_metodo(metodo, importo)
    adesso = adesso or datetime.now()

    pg = Pagamento(
        paziente_id=paziente_id,
        appuntamento_id=appuntamento_id,
        pacchetto_id=pacchetto_id,
        importo=importo,
        metodo=metodo,
        descrizione=descrizione,
        riferimento=riferimento,
        creato_il=adesso,
    )
    s.add(pg)
    s.flush()

    if metodo == "crediti":
        _usa_crediti(s, paziente_id, importo, appuntamento_id=appuntamento_id, descrizione=descrizione, adesso=adesso)
        _completa(s, pg, adesso)
    return pg


def _completa(s: Session, pg: Pagamento, adesso: datetime) -> None:
    pg.stato = StatoPagamentoTx.COMPLETATO
    pg.elaborato_il = adesso
    if pg.appuntamento_id:
        app = s.get(Appuntamento, pg.appuntamento_id)
        if app:
            app.stato_pagamento = StatoPagamento.PAGATO
            app.metodo_pagamento = pg.metodo
            app.riferimento_pagamento = pg.riferimento or pg.id


def registra_pagamento(
    paziente_id: str,
    importo: Decimal | int | float | str,
    metodo: str,
    appuntamento_id: str | None = None,
    descrizione: str | None = None,
    riferimento: str | None = None,
    adesso: datetime | None = None,
) -> str:
    with db_session() as s:
        if not s.get(Paziente, paziente_id):
            raise NonTrovato("Paziente non trovato.")
        if appuntamento_id:
            app = s.get(Appuntamento, appuntamento_id)
            if not app or app.paziente_id != paziente_id:
                raise NonTrovato("Appuntamento non trovato per il paziente.")

        pg = _nuovo_pagamento(
            s, paziente_id, importo, metodo,
            appuntamento_id=appuntamento_id, descrizione=descrizione, riferimento=riferimento, adesso=adesso,
        )
        logger.info("Pagamento %s registrato: %s %s", pg.id, pg.importo, metodo)
        return pg.id


def _pagamento(s: Session, pagamento_id: str) -> Pagamento:
    pg = s.get(Pagamento, pagamento_id)
    if not pg:
        raise NonTrovato("Pagamento non trovato.")
    return pg


def completa_pagamento(pagamento_id: str, riferimento: str | None = None, adesso: datetime | None = None) -> None:
    with db_session() as s:
        pg = _pagamento(s, pagamento_id)
        if pg.stato != StatoPagamentoTx.PENDENTE:
            raise RegolaViolata(f"Pagamento {pg.stato.value.lower()}: non completabile.")
        if riferimento:
            pg.riferimento = riferimento
        _completa(s, pg, adesso or datetime.now())
        _notifica(
            s, TipoNotifica.PAGAMENTO, f"Pagamento di {pg.importo} ricevuto. Grazie!",
            paziente_id=pg.paziente_id, titolo="Pagamento ricevuto", appuntamento_id=pg.appuntamento_id,
        )


def _disattiva_pacchetto(s: Session, pg: Pagamento) -> None:
    """Un pacchetto non pagato o rimborsato non dà più diritto a classi."""
    if not pg.pacchetto_id:
        return
    pk = s.get(PacchettoPaziente, pg.pacchetto_id)
    if pk and pk.attivo:
        pk.attivo = False
        if pk.classi_totali is not None:
            pk.classi_rimanenti = 0
        logger.info("Pacchetto %s disattivato (pagamento %s %s)", pk.id, pg.id, pg.stato.value)


def fallisci_pagamento(pagamento_id: str, motivo: str | None = None, adesso: datetime | None = None) -> None:
    with db_session() as s:
        pg = _pagamento(s, pagamento_id)
        if pg.stato != StatoPagamentoTx.PENDENTE:
            raise RegolaViolata("Solo i pagamenti pendenti possono fallire.")
        pg.stato = StatoPagamentoTx.FALLITO
        pg.elaborato_il = adesso or datetime.now()
        if motivo:
            pg.descrizione = f"{pg.descrizione}: {motivo}" if pg.descrizione else motivo
        if pg.appuntamento_id:
            app = s.get(Appuntamento, pg.appuntamento_id)
            if app and app.stato_pagamento == StatoPagamento.PENDENTE:
                app.stato_pagamento = StatoPagamento.FALLITO
        _disattiva_pacchetto(s, pg)


def rimborsa_pagamento(
    pagamento_id: str,
    come_credito: bool = False,
    creato_da: str | None = None,
    adesso: datetime | None = None,
) -> EsitoRimborso:
    """Rimborso totale di un pagamento completato; come_credito=True accredita l'importo sul ledger."""
    adesso = adesso or datetime.now()
    with db_session() as s:
        pg = _pagamento(s, pagamento_id)
        if pg.stato != StatoPagamentoTx.COMPLETATO:
            raise RegolaViolata("Si possono rimborsare solo pagamenti completati.")

        app = s.get(Appuntamento, pg.appuntamento_id) if pg.appuntamento_id else None
        if app and app.stato_pagamento == StatoPagamento.RIMBORSATO:
            raise RegolaViolata("Appuntamento già rimborsato (credito di cancellazione).")

        pg.stato = StatoPagamentoTx.RIMBORSATO
        pg.rimborsato_il = adesso
        if app:
            app.stato_pagamento = StatoPagamento.RIMBORSATO
        _disattiva_pacchetto(s, pg)

        credito_id = None
        if come_credito:
            credito_id = _accredita(
                s, pg.paziente_id, pg.importo, TipoCredito.RIMBORSO,
                descrizione=f"Rimborso pagamento {pg.id[:8]}", appuntamento_id=pg.appuntamento_id,
                creato_da=creato_da, adesso=adesso,
            ).id

        _notifica(
            s, TipoNotifica.PAGAMENTO,
            f"Rimborso di {pg.importo} {'accreditato come credito' if come_credito else 'in elaborazione'}.",
            paziente_id=pg.paziente_id, titolo="Rimborso", appuntamento_id=pg.appuntamento_id,
        )
        logger.info("Pagamento %s rimborsato (credito: %s)", pg.id, come_credito)
        return EsitoRimborso(pg.id, pg.importo, credito_id)


# =========================
# Letture
# =========================
def _giorno(d: date) -> datetime:
    return datetime.combine(d, datetime.min.time())


def lista_pagamenti_flat(
    stato: StatoPagamentoTx | None = None,
    metodo: str | None = None,
    dal: date | None = None,
    al: date | None = None,
    paziente_id: str | None = None,
    limit: int = 200,
) -> list[dict]:
    with db_session() as s:
        q = select(Pagamento, Paziente).join(Paziente, Paziente.id == Pagamento.paziente_id)
        if stato:
            q = q.where(Pagamento.stato == stato)
        if metodo:
            q = q.where(Pagamento.metodo == metodo)
        if paziente_id:
            q = q.where(Pagamento.paziente_id == paziente_id)
        if dal:
            q = q.where(Pagamento.creato_il >= _giorno(dal))
        if al:
            q = q.where(Pagamento.creato_il < _giorno(al) + timedelta(days=1))
        q = q.order_by(Pagamento.creato_il.desc()).limit(limit)

        return [
            {
                "id": pg.id,
                "paziente_id": p.id,
                "paziente": p.nome_completo,
                "appuntamento_id": pg.appuntamento_id,
                "pacchetto_id": pg.pacchetto_id,
                "importo": float(pg.importo),
                "metodo": pg.metodo,
                "stato": pg.stato.value,
                "riferimento": pg.riferimento,
                "descrizione": pg.descrizione,
                "creato_il": pg.creato_il.isoformat(),
                "elaborato_il": pg.elaborato_il.isoformat() if pg.elaborato_il else None,
            }
            for pg, p in s.execute(q).all()
        ]


def statistiche_pagamenti(dal: date | None = None, al: date | None = None) -> dict:
    with db_session() as s:
        q = select(Pagamento.stato, func.count(Pagamento.id), func.coalesce(func.sum(Pagamento.importo), 0))
        if dal:
            q = q.where(Pagamento.creato_il >= _giorno(dal))
        if al:
            q = q.where(Pagamento.creato_il < _giorno(al) + timedelta(days=1))
        rows = s.execute(q.group_by(Pagamento.stato)).all()

    per_stato = {stato: (n, arrotonda(tot)) for stato, n, tot in rows}

    def _voce(stato: StatoPagamentoTx) -> tuple[int, Decimal]:
        return per_stato.get(stato, (0, Decimal("0.00")))

    completati, pendenti, rimborsati = (
        _voce(StatoPagamentoTx.COMPLETATO),
        _voce(StatoPagamentoTx.PENDENTE),
        _voce(StatoPagamentoTx.RIMBORSATO),
    )
    return {
        "totale_incassato": float(completati[1]),
        "totale_pendente": float(pendenti[1]),
        "totale_rimborsato": float(rimborsati[1]),
        "n_completati": completati[0],
        "n_pendenti": pendenti[0],
        "n_rimborsati": rimborsati[0],
        "n_falliti": _voce(StatoPagamentoTx.FALLITO)[0],
    }
