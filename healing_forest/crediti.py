"""
Ledger dei crediti pazienti.

Un credito nasce come lotto (`Credito`, con importo residuo e scadenza) e ogni
variazione produce un `MovimentoCredito` con segno. Il saldo del paziente è la
somma dei movimenti; `Paziente.saldo_crediti` ne è la cache e viene scritta
nella stessa transazione del movimento.

Le funzioni con prefisso `_` lavorano dentro una sessione già aperta, così
prenotazioni/pagamenti possono accreditare o scalare crediti nella loro transazione.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from healing_forest.db import db_session
from healing_forest.eccezioni import CreditiInsufficienti, NonTrovato, RegolaViolata
from healing_forest.models import Credito, MovimentoCredito, Paziente, TipoCredito, TipoMovimento, TipoNotifica
from healing_forest.notifiche import _notifica
from healing_forest.regole import UTILIZZO_MASSIMO_CREDITI, UTILIZZO_MINIMO_CREDITI, arrotonda, scadenza_credito

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class RiepilogoCrediti:
    paziente_id: str
    nome_completo: str
    saldo: Decimal
    totale_accreditato: Decimal
    totale_usato: Decimal
    totale_scaduto: Decimal
    lotti_attivi: int


# =========================
# Primitive (sessione aperta)
# =========================
def _paziente_bloccato(s: Session, paziente_id: str) -> Paziente:
    p = s.get(Paziente, paziente_id, with_for_update=True)
    if not p:
        raise NonTrovato("Paziente non trovato.")
    return p


def _registra_movimento(
    s: Session,
    paziente: Paziente,
    tipo: TipoMovimento,
    importo: Decimal,
    credito_id: int | None = None,
    appuntamento_id: str | None = None,
    descrizione: str | None = None,
    creato_da: str | None = None,
) -> MovimentoCredito:
    prima = arrotonda(paziente.saldo_crediti or ZERO)
    dopo = arrotonda(prima + importo)

    mov = MovimentoCredito(
        paziente_id=paziente.id,
        credito_id=credito_id,
        appuntamento_id=appuntamento_id,
        tipo=tipo,
        importo=arrotonda(importo),
        saldo_prima=prima,
        saldo_dopo=dopo,
        descrizione=descrizione,
        creato_da=creato_da,
    )
    s.add(mov)
    paziente.saldo_crediti = dopo
    return mov


def _accredita(
    s: Session,
    paziente_id: str,
    importo: Decimal | int | float | str,
    tipo: TipoCredito,
    descrizione: str | None = None,
    scade_il: datetime | None = None,
    appuntamento_id: str | None = None,
    creato_da: str | None = None,
    adesso: datetime | None = None,
) -> Credito:
    importo = arrotonda(importo)
    if importo <= 0:
        raise RegolaViolata("L'importo del credito deve essere maggiore di zero.")

    adesso = adesso or datetime.now()
    p = _paziente_bloccato(s, paziente_id)

    cr = Credito(
        paziente_id=p.id,
        tipo=tipo,
        importo=importo,
        residuo=importo,
        descrizione=descrizione,
        scade_il=scade_il if scade_il is not None else scadenza_credito(adesso),
        appuntamento_origine_id=appuntamento_id,
        creato_da=creato_da,
    )
    s.add(cr)
    s.flush()

    _registra_movimento(
        s, p, TipoMovimento.ACCREDITO, importo,
        credito_id=cr.id, appuntamento_id=appuntamento_id, descrizione=descrizione, creato_da=creato_da,
    )
    logger.info("Credito %s di %s accreditato a %s", tipo.value, importo, p.id)
    return cr


def _lotti_attivi(s: Session, paziente_id: str, adesso: datetime) -> list[Credito]:
    """Lotti con residuo, ordinati per consumo: prima chi scade prima, poi i più vecchi."""
    q = (
        select(Credito)
        .where(
            and_(
                Credito.paziente_id == paziente_id,
                Credito.residuo > 0,
                or_(Credito.scade_il.is_(None), Credito.scade_il > adesso),
            )
        )
        .order_by(Credito.scade_il.is_(None), Credito.scade_il.asc(), Credito.creato_il.asc(), Credito.id.asc())
    )
    return list(s.scalars(q))


def _scadi_lotti(s: Session, adesso: datetime, paziente_id: str | None = None) -> int:
    q = select(Credito).where(
        and_(Credito.residuo > 0, Credito.scade_il.is_not(None), Credito.scade_il <= adesso)
    )
    if paziente_id:
        q = q.where(Credito.paziente_id == paziente_id)

    scaduti = 0
    for cr in s.scalars(q).all():
        p = _paziente_bloccato(s, cr.paziente_id)
        residuo = arrotonda(cr.residuo)
        cr.residuo = ZERO
        _registra_movimento(
            s, p, TipoMovimento.SCADENZA, -residuo,
            credito_id=cr.id, descrizione=f"Credito scaduto il {cr.scade_il:%d/%m/%Y}",
        )
        scaduti += 1
    return scaduti


def _usa_crediti(
    s: Session,
    paziente_id: str,
    importo: Decimal | int | float | str,
    appuntamento_id: str | None = None,
    descrizione: str | None = None,
    adesso: datetime | None = None,
) -> Decimal:
    importo = arrotonda(importo)
    adesso = adesso or datetime.now()

    if importo <= 0:
        raise RegolaViolata("L'importo da utilizzare deve essere maggiore di zero.")
    if importo < UTILIZZO_MINIMO_CREDITI:
        raise RegolaViolata(f"L'utilizzo minimo di crediti è {UTILIZZO_MINIMO_CREDITI}.")
    if UTILIZZO_MASSIMO_CREDITI is not None and importo > UTILIZZO_MASSIMO_CREDITI:
        raise RegolaViolata(f"L'utilizzo massimo di crediti per transazione è {UTILIZZO_MASSIMO_CREDITI}.")

    p = _paziente_bloccato(s, paziente_id)
    _scadi_lotti(s, adesso, paziente_id=paziente_id)

    lotti = _lotti_attivi(s, paziente_id, adesso)
    disponibile = sum((arrotonda(c.residuo) for c in lotti), ZERO)
    if importo > disponibile:
        raise CreditiInsufficienti(f"Crediti insufficienti: disponibili {disponibile}, richiesti {importo}.")

    da_scalare = importo
    for cr in lotti:
        if da_scalare <= 0:
            break
        quota = min(arrotonda(cr.residuo), da_scalare)
        cr.residuo = arrotonda(cr.residuo) - quota
        da_scalare -= quota

    _registra_movimento(
        s, p, TipoMovimento.UTILIZZO, -importo,
        appuntamento_id=appuntamento_id, descrizione=descrizione or "Utilizzo crediti",
    )
    logger.info("Usati %s crediti di %s (appuntamento %s)", importo, paziente_id, appuntamento_id)
    return importo


# =========================
# Operazioni (una transazione ciascuna)
# =========================
def accredita(
    paziente_id: str,
    importo: Decimal | int | float | str,
    tipo: TipoCredito,
    descrizione: str | None = None,
    scade_il: datetime | None = None,
    appuntamento_id: str | None = None,
    creato_da: str | None = None,
) -> int:
    with db_session() as s:
        return _accredita(
            s, paziente_id, importo, tipo,
            descrizione=descrizione, scade_il=scade_il, appuntamento_id=appuntamento_id, creato_da=creato_da,
        ).id


def crea_credito_manuale(
    paziente_id: str,
    importo: Decimal | int | float | str,
    motivo: str,
    descrizione: str | None = None,
    creato_da: str | None = None,
    scade_il: datetime | None = None,
) -> int:
    """Credito inserito a mano dalla dashboard (solo admin/staff)."""
    testo = f"{motivo}: {descrizione}" if descrizione else motivo
    with db_session() as s:
        cr = _accredita(
            s, paziente_id, importo, TipoCredito.AGGIUSTAMENTO_ADMIN,
            descrizione=testo, creato_da=creato_da, scade_il=scade_il,
        )
        _notifica(
            s, TipoNotifica.CREDITO,
            f"Hai ricevuto un credito di {cr.importo}: {motivo}. Scade il {cr.scade_il:%d/%m/%Y}.",
            paziente_id=paziente_id, titolo="Nuovo credito",
        )
        return cr.id


def usa_crediti(
    paziente_id: str,
    importo: Decimal | int | float | str,
    appuntamento_id: str | None = None,
    adesso: datetime | None = None,
) -> Decimal:
    with db_session() as s:
        return _usa_crediti(s, paziente_id, importo, appuntamento_id=appuntamento_id, adesso=adesso)


def scadi_crediti(adesso: datetime | None = None) -> int:
    """Manutenzione: azzera i lotti scaduti. Ritorna il numero di lotti scaduti."""
    with db_session() as s:
        n = _scadi_lotti(s, adesso or datetime.now())
    if n:
        logger.info("Crediti scaduti: %d lotti", n)
    return n


# =========================
# Letture
# =========================
def saldo(paziente_id: str) -> Decimal:
    """Saldo come somma con segno dei movimenti."""
    with db_session() as s:
        tot = s.execute(
            select(func.coalesce(func.sum(MovimentoCredito.importo), 0)).where(
                MovimentoCredito.paziente_id == paziente_id
            )
        ).scalar_one()
        return arrotonda(tot)


def crediti_attivi(paziente_id: str, adesso: datetime | None = None) -> list[dict]:
    with db_session() as s:
        return [
            {
                "id": c.id,
                "tipo": c.tipo.value,
                "importo": float(c.importo),
                "residuo": float(c.residuo),
                "descrizione": c.descrizione,
                "scade_il": c.scade_il.isoformat() if c.scade_il else None,
                "creato_il": c.creato_il.isoformat(),
            }
            for c in _lotti_attivi(s, paziente_id, adesso or datetime.now())
        ]


def storico_movimenti(paziente_id: str, limit: int = 50) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(MovimentoCredito)
            .where(MovimentoCredito.paziente_id == paziente_id)
            .order_by(MovimentoCredito.creato_il.desc(), MovimentoCredito.id.desc())
            .limit(limit)
        )
        return [
            {
                "id": m.id,
                "tipo": m.tipo.value,
                "importo": float(m.importo),
                "saldo_prima": float(m.saldo_prima),
                "saldo_dopo": float(m.saldo_dopo),
                "descrizione": m.descrizione,
                "appuntamento_id": m.appuntamento_id,
                "creato_il": m.creato_il.isoformat(),
            }
            for m in rows
        ]


def _somma_per_tipo(s: Session, paziente_id: str) -> dict[TipoMovimento, Decimal]:
    rows = s.execute(
        select(MovimentoCredito.tipo, func.sum(MovimentoCredito.importo))
        .where(MovimentoCredito.paziente_id == paziente_id)
        .group_by(MovimentoCredito.tipo)
    ).all()
    return {tipo: arrotonda(tot or 0) for tipo, tot in rows}


def _riepilogo(s: Session, p: Paziente, adesso: datetime) -> RiepilogoCrediti:
    somme = _somma_per_tipo(s, p.id)
    return RiepilogoCrediti(
        paziente_id=p.id,
        nome_completo=p.nome_completo,
        saldo=sum(somme.values(), ZERO),
        totale_accreditato=somme.get(TipoMovimento.ACCREDITO, ZERO),
        totale_usato=-somme.get(TipoMovimento.UTILIZZO, ZERO),
        totale_scaduto=-somme.get(TipoMovimento.SCADENZA, ZERO),
        lotti_attivi=len(_lotti_attivi(s, p.id, adesso)),
    )


def riepilogo(paziente_id: str, adesso: datetime | None = None) -> RiepilogoCrediti:
    with db_session() as s:
        p = s.get(Paziente, paziente_id)
        if not p:
            raise NonTrovato("Paziente non trovato.")
        return _riepilogo(s, p, adesso or datetime.now())


def riepilogo_tutti(solo_con_saldo: bool = False, adesso: datetime | None = None) -> list[RiepilogoCrediti]:
    """Vista admin: tutti i pazienti con movimenti, saldo decrescente."""
    adesso = adesso or datetime.now()
    with db_session() as s:
        ids = select(MovimentoCredito.paziente_id).distinct()
        pazienti = s.scalars(select(Paziente).where(Paziente.id.in_(ids))).all()
        out = [_riepilogo(s, p, adesso) for p in pazienti]

    if solo_con_saldo:
        out = [r for r in out if r.saldo > 0]
    return sorted(out, key=lambda r: r.saldo, reverse=True)


def verifica_saldi() -> list[dict]:
    """
    Confronta per ogni paziente cache, somma dei movimenti e somma dei residui dei lotti.
    Ritorna solo le incoerenze (lista vuota = ledger coerente).
    """
    with db_session() as s:
        mov = dict(
            s.execute(
                select(MovimentoCredito.paziente_id, func.sum(MovimentoCredito.importo)).group_by(
                    MovimentoCredito.paziente_id
                )
            ).all()
        )
        lotti = dict(
            s.execute(select(Credito.paziente_id, func.sum(Credito.residuo)).group_by(Credito.paziente_id)).all()
        )

        incoerenze = []
        for p in s.scalars(select(Paziente)):
            cache = arrotonda(p.saldo_crediti or 0)
            da_movimenti = arrotonda(mov.get(p.id) or 0)
            da_lotti = arrotonda(lotti.get(p.id) or 0)
            if not (cache == da_movimenti == da_lotti):
                incoerenze.append(
                    {
                        "paziente_id": p.id,
                        "cache": float(cache),
                        "movimenti": float(da_movimenti),
                        "lotti": float(da_lotti),
                    }
                )
        if incoerenze:
            logger.warning("Ledger crediti incoerente per %d pazienti", len(incoerenze))
        return incoerenze
