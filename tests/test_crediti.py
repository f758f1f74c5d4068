"""Test patient credit ledger."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from healing_forest import crediti
from healing_forest.db import db_session
from healing_forest.eccezioni import CreditiInsufficienti, NonTrovato, RegolaViolata
from healing_forest.models import Paziente, TipoCredito
from healing_forest.notifiche import notifiche_paziente


def test_accredita_aggiorna_saldo_e_cache(paziente):
    crediti.accredita(paziente, 50000, TipoCredito.PROMOZIONE, descrizione="Benvenuto")

    assert crediti.saldo(paziente) == Decimal("50000")
    r = crediti.riepilogo(paziente)
    assert r.saldo == Decimal("50000")
    assert r.totale_accreditato == Decimal("50000")
    assert r.lotti_attivi == 1
    assert crediti.verifica_saldi() == []


def test_accredita_importo_non_positivo(paziente):
    with pytest.raises(RegolaViolata):
        crediti.accredita(paziente, 0, TipoCredito.PROMOZIONE)


def test_accredita_paziente_inesistente():
    with pytest.raises(NonTrovato):
        crediti.accredita("non-esiste", 10000, TipoCredito.PROMOZIONE)


def test_utilizzo_prima_i_lotti_in_scadenza(paziente, adesso):
    crediti.accredita(paziente, 20000, TipoCredito.PROMOZIONE, scade_il=datetime(2027, 1, 1))
    crediti.accredita(paziente, 50000, TipoCredito.CANCELLAZIONE, scade_il=datetime(2026, 12, 1))

    crediti.usa_crediti(paziente, 30000, adesso=adesso)

    lotti = crediti.crediti_attivi(paziente, adesso=adesso)
    assert [(l["tipo"], l["residuo"]) for l in lotti] == [("CANCELLAZIONE", 20000.0), ("PROMOZIONE", 20000.0)]
    assert crediti.saldo(paziente) == Decimal("40000")
    assert crediti.riepilogo(paziente, adesso=adesso).totale_usato == Decimal("30000")
    assert crediti.verifica_saldi() == []


def test_utilizzo_oltre_il_saldo(paziente, adesso):
    crediti.accredita(paziente, 20000, TipoCredito.PROMOZIONE)
    with pytest.raises(CreditiInsufficienti):
        crediti.usa_crediti(paziente, 30000, adesso=adesso)
    # nessun movimento parziale
    assert crediti.saldo(paziente) == Decimal("20000")


def test_utilizzo_minimo(paziente, adesso):
    crediti.accredita(paziente, 20000, TipoCredito.PROMOZIONE)
    with pytest.raises(RegolaViolata):
        crediti.usa_crediti(paziente, 5000, adesso=adesso)


def test_scadenza_crediti(paziente, adesso):
    crediti.accredita(paziente, 30000, TipoCredito.PROMOZIONE, scade_il=adesso - timedelta(days=1))
    crediti.accredita(paziente, 10000, TipoCredito.PROMOZIONE, scade_il=adesso + timedelta(days=30))

    assert crediti.scadi_crediti(adesso=adesso) == 1
    assert crediti.scadi_crediti(adesso=adesso) == 0

    r = crediti.riepilogo(paziente, adesso=adesso)
    assert r.saldo == Decimal("10000")
    assert r.totale_scaduto == Decimal("30000")
    assert crediti.verifica_saldi() == []


def test_lotti_scaduti_non_utilizzabili(paziente, adesso):
    crediti.accredita(paziente, 30000, TipoCredito.PROMOZIONE, scade_il=adesso - timedelta(days=1))
    with pytest.raises(CreditiInsufficienti):
        crediti.usa_crediti(paziente, 10000, adesso=adesso)


def test_storico_movimenti_con_saldi(paziente, adesso):
    crediti.accredita(paziente, 40000, TipoCredito.PROMOZIONE)
    crediti.usa_crediti(paziente, 15000, adesso=adesso)

    movimenti = crediti.storico_movimenti(paziente)
    assert len(movimenti) == 2
    utilizzo = next(m for m in movimenti if m["tipo"] == "UTILIZZO")
    assert utilizzo["importo"] == -15000.0
    assert utilizzo["saldo_prima"] == 40000.0
    assert utilizzo["saldo_dopo"] == 25000.0


def test_credito_manuale_admin(paziente):
    crediti.crea_credito_manuale(paziente, 25000, "Reclamo", descrizione="Attesa lunga", creato_da="admin-id")
    lotto = crediti.crediti_attivi(paziente)[0]
    assert lotto["tipo"] == "AGGIUSTAMENTO_ADMIN"
    assert lotto["descrizione"] == "Reclamo: Attesa lunga"

    avvisi = notifiche_paziente(paziente)
    assert [n["tipo"] for n in avvisi] == ["CREDITO"]
    assert "Reclamo" in avvisi[0]["messaggio"]


def test_riepilogo_tutti_solo_con_saldo(paziente, altro_paziente, adesso):
    crediti.accredita(paziente, 20000, TipoCredito.PROMOZIONE)
    crediti.accredita(altro_paziente, 10000, TipoCredito.PROMOZIONE)
    crediti.usa_crediti(altro_paziente, 10000, adesso=adesso)

    tutti = crediti.riepilogo_tutti()
    assert len(tutti) == 2
    con_saldo = crediti.riepilogo_tutti(solo_con_saldo=True)
    assert [r.paziente_id for r in con_saldo] == [paziente]


def test_verifica_saldi_rileva_cache_sbagliata(paziente):
    crediti.accredita(paziente, 20000, TipoCredito.PROMOZIONE)
    with db_session() as s:
        s.get(Paziente, paziente).saldo_crediti = Decimal("99999")

    incoerenze = crediti.verifica_saldi()
    assert len(incoerenze) == 1
    assert incoerenze[0]["paziente_id"] == paziente
    assert incoerenze[0]["cache"] == 99999.0
    assert incoerenze[0]["movimenti"] == 20000.0
