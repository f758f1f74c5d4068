"""Test FastAPI endpoints."""
from datetime import date, datetime, time, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from healing_forest.api_main import app
from healing_forest.auth_models import RuoloUtente
from healing_forest.auth_service import crea_utente


def _prossimo_feriale(giorni: int = 7) -> datetime:
    d = date.today() + timedelta(days=giorni)
    while d.weekday() >= 5:
        d += timedelta(days=1)
    return datetime.combine(d, time(10, 0))


def _login(client: TestClient, username: str, password: str) -> dict:
    r = client.post("/api/auth/login", data={"username": username, "password": password})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def _registra(client: TestClient, username: str, nome: str = "Ana", cognome: str = "Ruiz") -> dict:
    r = client.post(
        "/api/auth/register",
        json={"username": username, "password": "segreta1", "nome": nome, "cognome": cognome},
    )
    assert r.status_code == 201
    return _login(client, username, "segreta1")


@pytest.fixture
def client():
    """Create FastAPI test client (runs startup: tables and seed)."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def staff(client) -> dict:
    crea_utente("reception", "segreta1", ruolo=RuoloUtente.STAFF)
    return _login(client, "reception", "segreta1")


@pytest.fixture
def paziente_auth(client) -> dict:
    return _registra(client, "ana@example.com")


def test_register_e_me(client, paziente_auth):
    r = client.get("/api/me", headers=paziente_auth)
    assert r.status_code == 200
    data = r.json()
    assert data["username"] == "ana@example.com"
    assert data["ruolo"] == "PAZIENTE"
    assert data["paziente_id"]


def test_register_duplicato(client, paziente_auth):
    r = client.post(
        "/api/auth/register",
        json={"username": "ana@example.com", "password": "segreta1", "nome": "Ana", "cognome": "Ruiz"},
    )
    assert r.status_code == 409
    assert r.json()["detail"] == "Username già registrato."


def test_login_errato(client):
    r = client.post("/api/auth/login", data={"username": "nessuno", "password": "x"})
    assert r.status_code == 401


def test_admin_richiede_token(client):
    assert client.get("/api/admin/pazienti").status_code == 401
    assert client.get("/api/admin/pazienti", headers={"Authorization": "Bearer rotto"}).status_code == 401


def test_admin_vietato_al_paziente(client, paziente_auth):
    r = client.get("/api/admin/pazienti", headers=paziente_auth)
    assert r.status_code == 403


def test_area_paziente_vietata_allo_staff(client, staff):
    assert client.get("/api/me/appuntamenti", headers=staff).status_code == 403


def test_catalogo_pubblico(client):
    servizi = client.get("/api/servizi").json()
    assert "Medicina Funcional" in [s["nome"] for s in servizi]

    drips = next(s for s in servizi if s["codice"] == "drips")
    sotto = client.get(f"/api/servizi/{drips['id']}/sotto-servizi").json()
    assert "NAD 500 mg" in [s["nome"] for s in sotto]

    assert len(client.get("/api/professionisti").json()) == 4
    assert len(client.get("/api/spazi").json()) == 4
    assert [p["codice"] for p in client.get("/api/pacchetti").json()][0] == "single"


def test_errori_di_dominio_in_http(client, staff):
    r = client.get("/api/admin/appuntamenti/non-esiste", headers=staff)
    assert r.status_code == 404
    assert r.json()["detail"] == "Appuntamento non trovato."

    r = client.post("/api/admin/pagamenti", json={"paziente_id": "x", "importo": 10, "metodo": "bitcoin"}, headers=staff)
    assert r.status_code == 404


def test_flusso_prenotazione(client, staff, paziente_auth):
    prof = client.get("/api/professionisti").json()[0]["id"]
    servizio = client.post(
        "/api/admin/servizi",
        json={"codice": "consulta-api", "nome": "Consulta", "prezzo": 100000, "durata_minuti": 60},
        headers=staff,
    ).json()["servizio_id"]
    inizio = _prossimo_feriale()
    body = {"professionista_id": prof, "servizio_id": servizio, "inizio": inizio.isoformat()}

    slot = client.get(
        "/api/disponibilita",
        params={"professionista_id": prof, "giorno": inizio.date().isoformat(), "servizio_id": servizio},
    ).json()
    assert "10:00" in slot

    r = client.post("/api/me/appuntamenti", json=body, headers=paziente_auth)
    assert r.status_code == 201
    app_id = r.json()["appuntamento_id"]

    altro = _registra(client, "luis@example.com", nome="Luis", cognome="Mora")
    r = client.post("/api/me/appuntamenti", json=body, headers=altro)
    assert r.status_code == 409

    r = client.post(f"/api/me/appuntamenti/{app_id}/annulla", json={"motivo": "no"}, headers=altro)
    assert r.status_code == 403

    miei = client.get("/api/me/appuntamenti", headers=paziente_auth).json()
    assert [a["id"] for a in miei] == [app_id]

    agenda = client.get(
        "/api/admin/agenda", params={"professionista_id": prof, "giorno": inizio.date().isoformat()}, headers=staff
    ).json()
    assert [a["id"] for a in agenda] == [app_id]

    r = client.post(f"/api/me/appuntamenti/{app_id}/annulla", json={"motivo": "Viaggio"}, headers=paziente_auth)
    assert r.status_code == 200
    assert float(r.json()["importo_credito"]) == 0

    r = client.post(f"/api/me/appuntamenti/{app_id}/annulla", json={}, headers=paziente_auth)
    assert r.status_code == 400


def test_crediti_via_api(client, staff, paziente_auth):
    pid = client.get("/api/me", headers=paziente_auth).json()["paziente_id"]

    r = client.post(
        "/api/admin/crediti", json={"paziente_id": pid, "importo": 50000, "motivo": "Promo"}, headers=staff
    )
    assert r.status_code == 201

    mie = client.get("/api/me/crediti", headers=paziente_auth).json()
    assert float(mie["riepilogo"]["saldo"]) == 50000
    assert len(mie["lotti"]) == 1
    assert client.get("/api/admin/crediti/verifica", headers=staff).json()["ok"] is True


def test_notifiche_paziente(client, staff, paziente_auth):
    pid = client.get("/api/me", headers=paziente_auth).json()["paziente_id"]
    r = client.post(
        "/api/admin/push", json={"paziente_id": pid, "titolo": "Ciao", "messaggio": "Benvenuta"}, headers=staff
    )
    assert r.json()["inviata"] is False

    notifiche = client.get("/api/me/notifiche", headers=paziente_auth).json()
    assert [n["messaggio"] for n in notifiche] == ["Benvenuta"]
    r = client.post(f"/api/me/notifiche/{notifiche[0]['id']}/letta", headers=paziente_auth)
    assert r.json()["ok"] is True
    assert client.get("/api/me/notifiche", params={"solo_non_lette": True}, headers=paziente_auth).json() == []

    pendenti = client.get("/api/notifiche/pendenti", headers=staff).json()
    assert [n["paziente"] for n in pendenti] == ["Ana Ruiz"]


def test_dashboard(client, staff):
    kpi = client.get("/api/admin/dashboard", headers=staff).json()
    assert kpi["pazienti_attivi"] == 0
    assert kpi["incasso_mese"] == 0

    stati = client.get("/api/admin/report/appuntamenti", headers=staff).json()
    assert set(stati) == {"PENDENTE", "CONFERMATO", "COMPLETATO", "ANNULLATO", "NON_PRESENTATO"}


def test_prenotazione_con_orario_utc(client, staff, paziente_auth):
    prof = client.get("/api/professionisti").json()[0]["id"]
    servizio = client.post(
        "/api/admin/servizi",
        json={"codice": "consulta-utc", "nome": "Consulta", "prezzo": 100000, "durata_minuti": 60},
        headers=staff,
    ).json()["servizio_id"]
    inizio = _prossimo_feriale()
    # stesso istante, espresso in UTC con suffisso Z
    inizio_utc = inizio.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

    r = client.post(
        "/api/me/appuntamenti",
        json={"professionista_id": prof, "servizio_id": servizio, "inizio": inizio_utc},
        headers=paziente_auth,
    )
    assert r.status_code == 201

    miei = client.get("/api/me/appuntamenti", headers=paziente_auth).json()
    assert miei[0]["inizio"] == inizio.isoformat()


def test_push_token_solo_del_proprietario(client, paziente_auth):
    r = client.post("/api/me/push-token", json={"token": "ExponentPushToken[ana]"}, headers=paziente_auth)
    assert r.status_code == 201

    altro = _registra(client, "luis@example.com", nome="Luis", cognome="Mora")
    r = client.delete("/api/me/push-token", params={"token": "ExponentPushToken[ana]"}, headers=altro)
    assert r.json()["ok"] is False

    r = client.delete("/api/me/push-token", params={"token": "ExponentPushToken[ana]"}, headers=paziente_auth)
    assert r.json()["ok"] is True
