"""Test in-app notifications, push delivery and reminders."""
from datetime import datetime, timedelta

import pytest
import requests

from healing_forest import classi, notifiche, prenotazioni
from healing_forest.eccezioni import NonTrovato, RegolaViolata
from healing_forest.models import TipoNotifica

INIZIO = datetime(2026, 3, 5, 10, 0)
# fuori dall'orario silenzioso
GIORNO = datetime(2026, 3, 2, 10, 0)


class FakeResponse:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return {"data": [{"status": "ok"}]}


@pytest.fixture
def push_calls(monkeypatch):
    """Intercetta le chiamate al servizio push."""
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "timeout": timeout})
        return FakeResponse()

    monkeypatch.setattr(notifiche.requests, "post", fake_post)
    return calls


def test_crea_e_leggi_notifica(paziente, altro_paziente):
    nid = notifiche.crea_notifica(TipoNotifica.GENERALE, "Benvenuta!", paziente_id=paziente, titolo="Ciao")

    assert notifiche.conta_non_lette(paziente) == 1
    assert not notifiche.marca_notifica_letta(nid, paziente_id=altro_paziente)
    assert notifiche.marca_notifica_letta(nid, paziente_id=paziente)
    assert notifiche.conta_non_lette(paziente) == 0
    assert not notifiche.marca_notifica_letta(9999)


def test_pendenti_e_marca_inviata(paziente):
    nid = notifiche.crea_notifica(TipoNotifica.GENERALE, "Messaggio", paziente_id=paziente)

    pendenti = notifiche.notifiche_pendenti_flat()
    assert [(n["id"], n["paziente"]) for n in pendenti] == [(nid, "Ana Ruiz")]
    assert [n.id for n in notifiche.estrai_notifiche_pendenti()] == [nid]

    assert notifiche.marca_notifica_inviata(nid)
    assert not notifiche.marca_notifica_inviata(nid)
    assert notifiche.notifiche_pendenti_flat() == []


def test_push_token(paziente, altro_paziente):
    with pytest.raises(RegolaViolata):
        notifiche.registra_push_token(paziente, "  ")
    with pytest.raises(NonTrovato):
        notifiche.registra_push_token("non-esiste", "ExponentPushToken[abc]")

    tid = notifiche.registra_push_token(paziente, "ExponentPushToken[abc]", "ios")
    # stesso dispositivo, nuovo account
    assert notifiche.registra_push_token(altro_paziente, "ExponentPushToken[abc]") == tid

    # il token ora appartiene all'altro paziente
    assert not notifiche.rimuovi_push_token("ExponentPushToken[abc]", paziente_id=paziente)
    assert notifiche.rimuovi_push_token("ExponentPushToken[abc]", paziente_id=altro_paziente)
    assert not notifiche.rimuovi_push_token("ExponentPushToken[abc]")


def test_invio_push(paziente, push_calls):
    notifiche.registra_push_token(paziente, "ExponentPushToken[abc]", "android")

    esito = notifiche.invia_notifica_paziente(
        paziente, "Offerta", "Sconto sui faciales", dati={"promo": 1}, adesso=GIORNO
    )

    assert esito["inviata"]
    assert len(push_calls) == 1
    msg = push_calls[0]["json"][0]
    assert msg["to"] == "ExponentPushToken[abc]"
    assert msg["title"] == "Offerta"
    assert msg["data"] == {"promo": 1}
    assert notifiche.notifiche_pendenti_flat() == []


def test_push_inviata_dopo_il_commit(paziente, monkeypatch):
    notifiche.registra_push_token(paziente, "ExponentPushToken[abc]")
    visibili = []

    def fake_post(url, json=None, headers=None, timeout=None):
        # un'altra sessione vede già la notifica: la transazione è chiusa
        visibili.append(len(notifiche.notifiche_paziente(paziente)))
        return FakeResponse()

    monkeypatch.setattr(notifiche.requests, "post", fake_post)

    assert notifiche.invia_notifica_paziente(paziente, "Offerta", "Sconto", adesso=GIORNO)["inviata"]
    assert visibili == [1]


def test_orario_silenzioso_trattiene_le_push(paziente, push_calls):
    notifiche.registra_push_token(paziente, "ExponentPushToken[abc]")

    esito = notifiche.invia_notifica_paziente(paziente, "Offerta", "Sconto", adesso=datetime(2026, 3, 2, 23, 0))

    assert not esito["inviata"]
    assert push_calls == []
    assert notifiche.invia_push_pendenti(datetime(2026, 3, 3, 7, 30)) == 0
    assert notifiche.invia_push_pendenti(datetime(2026, 3, 3, 8, 0)) == 1
    assert len(push_calls) == 1
    assert notifiche.notifiche_pendenti_flat() == []


def test_push_pendenti_senza_dispositivi_restano(paziente, push_calls):
    notifiche.crea_notifica(TipoNotifica.GENERALE, "Messaggio", paziente_id=paziente)
    assert notifiche.invia_push_pendenti(GIORNO) == 0
    assert len(notifiche.notifiche_pendenti_flat()) == 1


def test_invio_senza_dispositivi(paziente, push_calls):
    esito = notifiche.invia_notifica_paziente(paziente, "Offerta", "Sconto", adesso=GIORNO)
    assert not esito["inviata"]
    assert push_calls == []
    assert len(notifiche.notifiche_pendenti_flat()) == 1


def test_invio_push_fallito_resta_pendente(paziente, monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.ConnectionError("rete non disponibile")

    monkeypatch.setattr(notifiche.requests, "post", fake_post)
    notifiche.registra_push_token(paziente, "ExponentPushToken[abc]")

    esito = notifiche.invia_notifica_paziente(paziente, "Offerta", "Sconto", adesso=GIORNO)
    assert not esito["inviata"]
    assert [n["id"] for n in notifiche.notifiche_pendenti_flat()] == [esito["notifica_id"]]


def test_invia_push_senza_token(push_calls):
    assert notifiche.invia_push([], "t", "c") == {"data": []}
    assert push_calls == []


def test_promemoria_appuntamento(paziente, professionista, servizio, adesso, push_calls):
    notifiche.registra_push_token(paziente, "ExponentPushToken[abc]")
    prenotazioni.prenota_appuntamento(paziente, professionista, servizio, INIZIO, adesso=adesso)

    # troppo presto per qualsiasi promemoria
    assert notifiche.scansiona_promemoria(adesso) == notifiche.EsitoPromemoria()

    e = notifiche.scansiona_promemoria(INIZIO - timedelta(hours=20))
    assert (e.appuntamenti_24h, e.appuntamenti_2h, e.push_inviate) == (1, 0, 1)
    assert notifiche.scansiona_promemoria(INIZIO - timedelta(hours=19)).appuntamenti_24h == 0

    e = notifiche.scansiona_promemoria(INIZIO - timedelta(hours=1))
    assert (e.appuntamenti_24h, e.appuntamenti_2h) == (0, 1)
    assert notifiche.scansiona_promemoria(INIZIO - timedelta(minutes=30)).appuntamenti_2h == 0


def test_promemoria_solo_finestra_breve(paziente, professionista, servizio, adesso):
    prenotazioni.prenota_appuntamento(paziente, professionista, servizio, INIZIO, adesso=adesso)

    e = notifiche.scansiona_promemoria(INIZIO - timedelta(hours=1))
    assert (e.appuntamenti_24h, e.appuntamenti_2h, e.push_inviate) == (0, 1, 0)
    promemoria = [n for n in notifiche.notifiche_paziente(paziente) if n["tipo"] == "PROMEMORIA"]
    assert len(promemoria) == 1


def test_promemoria_classe(paziente, altro_paziente, adesso):
    inizio = datetime(2026, 3, 3, 18, 0)
    cid = classi.crea_classe("ForestFire", "Fernanda", inizio)
    classi.iscrivi(paziente, cid, adesso=adesso)
    esito = classi.iscrivi(altro_paziente, cid, adesso=adesso)
    classi.annulla_iscrizione(esito.iscrizione_id, adesso=adesso)

    e = notifiche.scansiona_promemoria(inizio - timedelta(hours=1))
    assert e.classi == 1
    assert notifiche.scansiona_promemoria(inizio - timedelta(minutes=30)).classi == 0
    assert [n["tipo"] for n in notifiche.notifiche_paziente(paziente)] == ["PROMEMORIA_CLASSE"]


def test_promemoria_ignora_annullati(paziente, professionista, servizio, adesso):
    esito = prenotazioni.prenota_appuntamento(paziente, professionista, servizio, INIZIO, adesso=adesso)
    prenotazioni.annulla_appuntamento(esito.appuntamento_id, adesso=adesso)
    assert notifiche.scansiona_promemoria(INIZIO - timedelta(hours=1)).appuntamenti_2h == 0


def test_promemoria_in_orario_silenzioso(paziente, professionista, servizio, adesso, push_calls):
    notifiche.registra_push_token(paziente, "ExponentPushToken[abc]")
    inizio = INIZIO.replace(hour=9)
    prenotazioni.prenota_appuntamento(paziente, professionista, servizio, inizio, adesso=adesso)

    e = notifiche.scansiona_promemoria(datetime(2026, 3, 5, 7, 30))
    assert (e.appuntamenti_2h, e.push_inviate) == (1, 0)
    assert push_calls == []

    # alle 8 partono conferma e promemoria rimasti in sospeso
    assert notifiche.invia_push_pendenti(datetime(2026, 3, 5, 8, 0)) == 2
