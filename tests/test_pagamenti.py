"""Test payments and refunds."""
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from healing_forest import crediti, pagamenti, prenotazioni
from healing_forest.eccezioni import NonTrovato, RegolaViolata
from healing_forest.models import StatoPagamentoTx, TipoCredito

INIZIO = datetime(2026, 3, 5, 10, 0)


@pytest.fixture
def appuntamento(paziente, professionista, servizio, adesso) -> str:
    return prenotazioni.prenota_appuntamento(paziente, professionista, servizio, INIZIO, adesso=adesso).appuntamento_id


def test_pagamento_completato(paziente, appuntamento, adesso):
    pid = pagamenti.registra_pagamento(paziente, 100000, "carta", appuntamento_id=appuntamento)
    assert pagamenti.lista_pagamenti_flat(stato=StatoPagamentoTx.PENDENTE)[0]["id"] == pid

    pagamenti.completa_pagamento(pid, riferimento="TX-123", adesso=adesso)

    app = prenotazioni.appuntamento_flat(appuntamento)
    assert app["stato_pagamento"] == "PAGATO"
    assert app["metodo_pagamento"] == "carta"

    stats = pagamenti.statistiche_pagamenti()
    assert stats["totale_incassato"] == 100000.0
    assert stats["n_completati"] == 1
    assert stats["n_pendenti"] == 0


def test_pagamento_non_completabile_due_volte(paziente, appuntamento, adesso):
    pid = pagamenti.registra_pagamento(paziente, 100000, "contanti", appuntamento_id=appuntamento)
    pagamenti.completa_pagamento(pid, adesso=adesso)
    with pytest.raises(RegolaViolata):
        pagamenti.completa_pagamento(pid, adesso=adesso)


@pytest.mark.parametrize("metodo,importo", [("bitcoin", 50000), ("carta", 5000), ("contanti", 2000000)])
def test_metodo_e_limiti(paziente, metodo, importo):
    with pytest.raises(RegolaViolata):
        pagamenti.registra_pagamento(paziente, importo, metodo)


def test_pagamento_appuntamento_di_altri(altro_paziente, appuntamento):
    with pytest.raises(NonTrovato):
        pagamenti.registra_pagamento(altro_paziente, 100000, "carta", appuntamento_id=appuntamento)


def test_pagamento_con_crediti(paziente, appuntamento):
    crediti.accredita(paziente, 120000, TipoCredito.PROMOZIONE)

    pid = pagamenti.registra_pagamento(paziente, 100000, "crediti", appuntamento_id=appuntamento)

    pag = pagamenti.lista_pagamenti_flat(paziente_id=paziente)[0]
    assert pag["id"] == pid
    assert pag["stato"] == "COMPLETATO"
    assert crediti.saldo(paziente) == Decimal("20000")
    assert prenotazioni.appuntamento_flat(appuntamento)["stato_pagamento"] == "PAGATO"


def test_pagamento_fallito(paziente, appuntamento):
    pid = pagamenti.registra_pagamento(paziente, 100000, "pse", appuntamento_id=appuntamento)
    pagamenti.fallisci_pagamento(pid, motivo="Banca non disponibile")

    pag = pagamenti.lista_pagamenti_flat(paziente_id=paziente)[0]
    assert pag["stato"] == "FALLITO"
    assert pag["descrizione"] == "Banca non disponibile"
    assert prenotazioni.appuntamento_flat(appuntamento)["stato_pagamento"] == "FALLITO"
    assert pagamenti.statistiche_pagamenti()["n_falliti"] == 1


def test_rimborso_come_credito(paziente, appuntamento, adesso):
    pid = pagamenti.registra_pagamento(paziente, 100000, "carta", appuntamento_id=appuntamento)
    pagamenti.completa_pagamento(pid, adesso=adesso)

    esito = pagamenti.rimborsa_pagamento(pid, come_credito=True, adesso=adesso)

    assert esito.importo == Decimal("100000")
    assert esito.credito_id is not None
    assert crediti.saldo(paziente) == Decimal("100000")
    assert prenotazioni.appuntamento_flat(appuntamento)["stato_pagamento"] == "RIMBORSATO"
    assert pagamenti.statistiche_pagamenti()["totale_rimborsato"] == 100000.0

    with pytest.raises(RegolaViolata):
        pagamenti.rimborsa_pagamento(pid, come_credito=True, adesso=adesso)


def test_rimborso_pendente_rifiutato(paziente, appuntamento):
    pid = pagamenti.registra_pagamento(paziente, 100000, "carta", appuntamento_id=appuntamento)
    with pytest.raises(RegolaViolata):
        pagamenti.rimborsa_pagamento(pid)


def test_nessun_doppio_rimborso_dopo_annullamento(paziente, appuntamento, adesso):
    pid = pagamenti.registra_pagamento(paziente, 100000, "carta", appuntamento_id=appuntamento)
    pagamenti.completa_pagamento(pid, adesso=adesso)

    ann = prenotazioni.annulla_appuntamento(appuntamento, adesso=INIZIO - timedelta(hours=30))
    assert ann.importo_credito == Decimal("100000")

    with pytest.raises(RegolaViolata):
        pagamenti.rimborsa_pagamento(pid, come_credito=True, adesso=adesso)
    assert crediti.saldo(paziente) == Decimal("100000")


def test_filtro_per_giorno_usa_ora_locale(paziente):
    sera = datetime(2026, 3, 2, 21, 30)
    pid = pagamenti.registra_pagamento(paziente, 50000, "contanti", adesso=sera)

    assert [p["id"] for p in pagamenti.lista_pagamenti_flat(dal=sera.date(), al=sera.date())] == [pid]
    assert pagamenti.lista_pagamenti_flat(dal=date(2026, 3, 3)) == []
    assert pagamenti.statistiche_pagamenti(dal=sera.date(), al=sera.date())["n_pendenti"] == 1


def test_creato_il_predefinito_nel_giorno_locale(paziente):
    oggi = date.today()
    pid = pagamenti.registra_pagamento(paziente, 50000, "contanti")
    assert [p["id"] for p in pagamenti.lista_pagamenti_flat(dal=oggi, al=oggi)] == [pid]


def test_pagamento_inesistente():
    with pytest.raises(NonTrovato):
        pagamenti.completa_pagamento("non-esiste")
