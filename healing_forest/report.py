from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import func, select

from healing_forest.db import db_session
from healing_forest.models import (
    Appuntamento,
    ClasseBreatheMove,
    Pagamento,
    Paziente,
    StatoAppuntamento,
    StatoClasse,
    StatoPagamentoTx,
)
from healing_forest.regole import arrotonda


def _inizio_mese(d: date) -> datetime:
    return datetime.combine(d.replace(day=1), time.min)


def _mese_successivo(d: datetime) -> datetime:
    return (d.replace(day=28) + timedelta(days=4)).replace(day=1)


def occupazione_classi(dal: date, al: date) -> dict:
    """Posti occupati / posti offerti sulle classi non annullate del periodo."""
    with db_session() as s:
        n, iscritti, posti = s.execute(
            select(
                func.count(ClasseBreatheMove.id),
                func.coalesce(func.sum(ClasseBreatheMove.iscritti), 0),
                func.coalesce(func.sum(ClasseBreatheMove.max_capienza), 0),
            ).where(
                ClasseBreatheMove.stato != StatoClasse.ANNULLATA,
                ClasseBreatheMove.inizio >= datetime.combine(dal, time.min),
                ClasseBreatheMove.inizio < datetime.combine(al, time.min) + timedelta(days=1),
            )
        ).one()
    return {
        "classi": n,
        "iscritti": int(iscritti),
        "posti": int(posti),
        "occupazione_pct": round(100 * int(iscritti) / int(posti), 1) if posti else 0.0,
    }


def kpi_dashboard(adesso: datetime | None = None) -> dict:
    adesso = adesso or datetime.now()
    oggi = datetime.combine(adesso.date(), time.min)
    mese = _inizio_mese(adesso.date())

    with db_session() as s:
        pazienti = s.execute(select(func.count(Paziente.id)).where(Paziente.attivo.is_(True))).scalar_one()
        appuntamenti_oggi = s.execute(
            select(func.count(Appuntamento.id)).where(
                Appuntamento.inizio >= oggi,
                Appuntamento.inizio < oggi + timedelta(days=1),
                Appuntamento.stato != StatoAppuntamento.ANNULLATO,
            )
        ).scalar_one()
        incasso_mese = s.execute(
            select(func.coalesce(func.sum(Pagamento.importo), 0)).where(
                Pagamento.stato == StatoPagamentoTx.COMPLETATO,
                Pagamento.elaborato_il >= mese,
                Pagamento.elaborato_il < _mese_successivo(mese),
            )
        ).scalar_one()
        n_pendenti, tot_pendenti = s.execute(
            select(func.count(Pagamento.id), func.coalesce(func.sum(Pagamento.importo), 0)).where(
                Pagamento.stato == StatoPagamentoTx.PENDENTE
            )
        ).one()
        crediti = s.execute(select(func.coalesce(func.sum(Paziente.saldo_crediti), 0))).scalar_one()

    settimana = occupazione_classi(adesso.date(), adesso.date() + timedelta(days=6))
    return {
        "pazienti_attivi": pazienti,
        "appuntamenti_oggi": appuntamenti_oggi,
        "incasso_mese": float(arrotonda(incasso_mese)),
        "pagamenti_pendenti": n_pendenti,
        "importo_pendente": float(arrotonda(tot_pendenti)),
        "crediti_attivi": float(arrotonda(crediti)),
        "occupazione_classi_7gg": settimana["occupazione_pct"],
    }


def incassi_per_mese(mesi: int = 6, adesso: datetime | None = None) -> list[dict]:
    """Incassi completati degli ultimi `mesi` mesi (mese corrente incluso), dal più vecchio."""
    adesso = adesso or datetime.now()
    inizio = _inizio_mese(adesso.date())
    for _ in range(mesi - 1):
        inizio = _inizio_mese((inizio - timedelta(days=1)).date())

    totali: OrderedDict[str, Decimal] = OrderedDict()
    cur = inizio
    while cur <= adesso:
        totali[cur.strftime("%Y-%m")] = Decimal("0")
        cur = _mese_successivo(cur)

    with db_session() as s:
        rows = s.execute(
            select(Pagamento.elaborato_il, Pagamento.importo).where(
                Pagamento.stato == StatoPagamentoTx.COMPLETATO,
                Pagamento.elaborato_il >= inizio,
            )
        ).all()
    for quando, importo in rows:
        chiave = quando.strftime("%Y-%m")
        if chiave in totali:
            totali[chiave] += importo

    return [{"mese": k, "incasso": float(arrotonda(v))} for k, v in totali.items()]


def appuntamenti_per_stato(dal: date | None = None, al: date | None = None) -> dict[str, int]:
    with db_session() as s:
        q = select(Appuntamento.stato, func.count(Appuntamento.id))
        if dal:
            q = q.where(Appuntamento.inizio >= datetime.combine(dal, time.min))
        if al:
            q = q.where(Appuntamento.inizio < datetime.combine(al, time.min) + timedelta(days=1))
        rows = s.execute(q.group_by(Appuntamento.stato)).all()

    out = {st.value: 0 for st in StatoAppuntamento}
    out.update({st.value: n for st, n in rows})
    return out
