"""Test Breathe & Move classes: capacity, packages, waitlist."""
from datetime import datetime, timedelta

import pytest

from healing_forest import classi, pagamenti
from healing_forest.eccezioni import ConflittoPrenotazione, NonTrovato, RegolaViolata
from healing_forest.notifiche import notifiche_paziente

# martedì sera
INIZIO_CLASSE = datetime(2026, 3, 3, 18, 0)


def _classe(capienza: int = 12, inizio: datetime = INIZIO_CLASSE, nome: str = "ForestFire") -> str:
    return classi.crea_classe(nome, "Fernanda", inizio, max_capienza=capienza)


def test_crea_classe():
    cid = _classe(capienza=10)
    c = classi.classe_flat(cid)
    assert c["fine"] == "2026-03-03T18:50:00"
    assert c["posti_liberi"] == 10
    assert c["stato"] == "PROGRAMMATA"


def test_classe_duplicata():
    _classe()
    with pytest.raises(ConflittoPrenotazione):
        _classe()


def test_nessuna_classe_la_domenica():
    with pytest.raises(RegolaViolata):
        _classe(inizio=datetime(2026, 3, 8, 10, 0))


def test_capienza_rispettata(nuovo_paziente, adesso):
    cid = _classe(capienza=2)
    classi.iscrivi(nuovo_paziente(1), cid, adesso=adesso)
    classi.iscrivi(nuovo_paziente(2), cid, adesso=adesso)

    with pytest.raises(ConflittoPrenotazione, match="Classe piena"):
        classi.iscrivi(nuovo_paziente(3), cid, adesso=adesso)

    c = classi.classe_flat(cid)
    assert c["iscritti"] == 2
    assert c["posti_liberi"] == 0
    assert len(classi.partecipanti_classe_flat(cid)) == 2


def test_iscrizione_doppia(paziente, adesso):
    cid = _classe()
    classi.iscrivi(paziente, cid, adesso=adesso)
    with pytest.raises(ConflittoPrenotazione):
        classi.iscrivi(paziente, cid, adesso=adesso)


def test_una_classe_al_giorno(paziente, adesso):
    sera = _classe()
    mattina = _classe(inizio=INIZIO_CLASSE.replace(hour=10), nome="GutReboot")
    classi.iscrivi(paziente, sera, adesso=adesso)
    with pytest.raises(RegolaViolata):
        classi.iscrivi(paziente, mattina, adesso=adesso)


def test_iscrizioni_chiuse_due_ore_prima(paziente):
    cid = _classe()
    with pytest.raises(RegolaViolata):
        classi.iscrivi(paziente, cid, adesso=INIZIO_CLASSE - timedelta(minutes=90))


def test_iscrizione_senza_pacchetto_da_pagare(paziente, adesso):
    esito = classi.iscrivi(paziente, _classe(), adesso=adesso)
    assert esito.pacchetto_id is None
    assert esito.stato_pagamento == "PENDENTE"


def test_pacchetto_consumato_e_restituito(paziente, adesso):
    pk = classi.acquista_pacchetto(paziente, "pack4", adesso=adesso)
    cid = _classe()

    esito = classi.iscrivi(paziente, cid, adesso=adesso)
    assert esito.pacchetto_id == pk
    assert esito.stato_pagamento == "PAGATO"
    assert classi.pacchetto_attivo(paziente, adesso=adesso)["classi_rimanenti"] == 3

    ann = classi.annulla_iscrizione(esito.iscrizione_id, adesso=adesso)
    assert ann.classe_restituita
    assert classi.pacchetto_attivo(paziente, adesso=adesso)["classi_rimanenti"] == 4
    assert classi.classe_flat(cid)["iscritti"] == 0


def test_annullamento_tardivo_non_restituisce(paziente, adesso):
    classi.acquista_pacchetto(paziente, "pack4", adesso=adesso)
    esito = classi.iscrivi(paziente, _classe(), adesso=adesso)

    ann = classi.annulla_iscrizione(esito.iscrizione_id, adesso=INIZIO_CLASSE - timedelta(hours=1))
    assert not ann.classe_restituita
    assert classi.pacchetto_attivo(paziente, adesso=adesso)["classi_rimanenti"] == 3


def test_pacchetto_illimitato(paziente, adesso):
    classi.acquista_pacchetto(paziente, "week", adesso=adesso)
    classi.iscrivi(paziente, _classe(), adesso=adesso)
    pk = classi.pacchetto_attivo(paziente, adesso=adesso)
    assert pk["classi_totali"] is None
    assert pk["classi_rimanenti"] is None


def test_acquisto_pacchetto_registra_pagamento(paziente, adesso):
    pk = classi.acquista_pacchetto(paziente, "pack8", metodo="pse", adesso=adesso)

    pag = pagamenti.lista_pagamenti_flat(paziente_id=paziente)
    assert len(pag) == 1
    assert pag[0]["pacchetto_id"] == pk
    assert pag[0]["importo"] == 350000.0
    assert pag[0]["stato"] == "PENDENTE"
    assert [p["codice"] for p in classi.pacchetti_paziente_flat(paziente)] == ["pack8"]


def _pagamento_pacchetto(paziente: str, pk: int) -> str:
    return next(p["id"] for p in pagamenti.lista_pagamenti_flat(paziente_id=paziente) if p["pacchetto_id"] == pk)


def test_pacchetto_rimborsato_non_piu_utilizzabile(paziente, adesso):
    pk = classi.acquista_pacchetto(paziente, "pack4", adesso=adesso)
    pid = _pagamento_pacchetto(paziente, pk)
    pagamenti.completa_pagamento(pid, adesso=adesso)

    pagamenti.rimborsa_pagamento(pid, adesso=adesso)

    assert classi.pacchetto_attivo(paziente, adesso=adesso) is None
    assert classi.pacchetti_paziente_flat(paziente)[0]["classi_rimanenti"] == 0
    esito = classi.iscrivi(paziente, _classe(), adesso=adesso)
    assert esito.pacchetto_id is None
    assert esito.stato_pagamento == "PENDENTE"


def test_pacchetto_con_pagamento_fallito(paziente, adesso):
    pk = classi.acquista_pacchetto(paziente, "pack4", adesso=adesso)

    pagamenti.fallisci_pagamento(_pagamento_pacchetto(paziente, pk), motivo="carta rifiutata", adesso=adesso)

    assert not classi.pacchetti_paziente_flat(paziente)[0]["attivo"]
    assert classi.iscrivi(paziente, _classe(), adesso=adesso).pacchetto_id is None


def test_iscrizione_annullata_non_riattiva_pacchetto_rimborsato(paziente, adesso):
    pk = classi.acquista_pacchetto(paziente, "pack4", adesso=adesso)
    pid = _pagamento_pacchetto(paziente, pk)
    pagamenti.completa_pagamento(pid, adesso=adesso)
    esito = classi.iscrivi(paziente, _classe(), adesso=adesso)

    pagamenti.rimborsa_pagamento(pid, adesso=adesso)
    ann = classi.annulla_iscrizione(esito.iscrizione_id, adesso=adesso)

    assert not ann.classe_restituita
    assert classi.pacchetti_paziente_flat(paziente)[0]["classi_rimanenti"] == 0


def test_pacchetto_sconosciuto(paziente):
    with pytest.raises(NonTrovato):
        classi.acquista_pacchetto(paziente, "pack99")


def test_reiscrizione_dopo_annullamento(paziente, adesso):
    cid = _classe()
    esito = classi.iscrivi(paziente, cid, adesso=adesso)
    classi.annulla_iscrizione(esito.iscrizione_id, adesso=adesso)

    di_nuovo = classi.iscrivi(paziente, cid, adesso=adesso)
    assert di_nuovo.iscrizione_id == esito.iscrizione_id
    assert classi.classe_flat(cid)["iscritti"] == 1


# =========================
# Lista d'attesa
# =========================
def test_lista_attesa_solo_se_piena(paziente):
    cid = _classe(capienza=1)
    with pytest.raises(RegolaViolata):
        classi.entra_lista_attesa(paziente, cid)


def test_lista_attesa_e_posto_libero(nuovo_paziente, adesso):
    p1, p2, p3 = nuovo_paziente(1), nuovo_paziente(2), nuovo_paziente(3)
    cid = _classe(capienza=1)
    esito = classi.iscrivi(p1, cid, adesso=adesso)

    assert classi.entra_lista_attesa(p2, cid) == 1
    assert classi.entra_lista_attesa(p3, cid) == 2
    with pytest.raises(ConflittoPrenotazione):
        classi.entra_lista_attesa(p2, cid)
    with pytest.raises(ConflittoPrenotazione):
        classi.entra_lista_attesa(p1, cid)

    ann = classi.annulla_iscrizione(esito.iscrizione_id, adesso=adesso)
    assert ann.avvisati_lista_attesa == 2
    assert [n["tipo"] for n in notifiche_paziente(p2)] == ["POSTO_LIBERO"]

    classi.iscrivi(p2, cid, adesso=adesso)
    attesa = classi.lista_attesa_flat(cid)
    assert [(w["paziente_id"], w["posizione"]) for w in attesa] == [(p3, 1)]


def test_esci_lista_attesa(nuovo_paziente, adesso):
    p1, p2, p3 = nuovo_paziente(1), nuovo_paziente(2), nuovo_paziente(3)
    cid = _classe(capienza=1)
    classi.iscrivi(p1, cid, adesso=adesso)
    classi.entra_lista_attesa(p2, cid)
    classi.entra_lista_attesa(p3, cid)

    assert classi.esci_lista_attesa(p2, cid)
    assert not classi.esci_lista_attesa(p2, cid)
    assert [w["posizione"] for w in classi.lista_attesa_flat(cid)] == [1]


# =========================
# Gestione classi
# =========================
def test_annulla_classe(paziente, altro_paziente, adesso):
    classi.acquista_pacchetto(paziente, "pack4", adesso=adesso)
    cid = _classe(capienza=1)
    classi.iscrivi(paziente, cid, adesso=adesso)
    classi.entra_lista_attesa(altro_paziente, cid)

    assert classi.annulla_classe(cid, motivo="Istruttore malato", adesso=adesso) == 1

    c = classi.classe_flat(cid)
    assert c["stato"] == "ANNULLATA"
    assert c["iscritti"] == 0
    assert classi.lista_attesa_flat(cid) == []
    assert classi.pacchetto_attivo(paziente, adesso=adesso)["classi_rimanenti"] == 4
    assert "ANNULLAMENTO" in [n["tipo"] for n in notifiche_paziente(paziente)]
    with pytest.raises(RegolaViolata):
        classi.iscrivi(altro_paziente, cid, adesso=adesso)


def test_elimina_classe(paziente, adesso):
    cid = _classe()
    classi.iscrivi(paziente, cid, adesso=adesso)
    with pytest.raises(RegolaViolata):
        classi.elimina_classe(cid)

    vuota = _classe(nome="OmRoot")
    classi.elimina_classe(vuota)
    with pytest.raises(NonTrovato):
        classi.classe_flat(vuota)


def test_capienza_non_sotto_gli_iscritti(nuovo_paziente, adesso):
    cid = _classe(capienza=3)
    classi.iscrivi(nuovo_paziente(1), cid, adesso=adesso)
    classi.iscrivi(nuovo_paziente(2), cid, adesso=adesso)
    with pytest.raises(RegolaViolata):
        classi.aggiorna_classe(cid, max_capienza=1)
    classi.aggiorna_classe(cid, max_capienza=2, istruttore="Clara")
    assert classi.classe_flat(cid)["istruttore"] == "Clara"


def test_genera_calendario(adesso):
    # lunedì 08:00: le classi delle 06-08 sono già passate
    assert classi.genera_calendario(giorni=7, adesso=adesso) == 18
    assert classi.genera_calendario(giorni=7, adesso=adesso) == 0

    lunedi = classi.lista_classi_flat(adesso.date(), adesso.date())
    assert [c["nome"] for c in lunedi] == ["OmRoot", "ForestFire"]
