"""Test accounts, passwords and JWT."""
import pytest

from healing_forest import auth_service
from healing_forest.auth_models import RuoloUtente
from healing_forest.auth_security import create_access_token, decode_token, get_subject
from healing_forest.eccezioni import ConflittoPrenotazione, Duplicato, NonTrovato, RegolaViolata
from healing_forest.services import paziente_flat


def test_crea_e_autentica():
    uid = auth_service.crea_utente("  Reception ", "segreta1", ruolo=RuoloUtente.STAFF)

    u = auth_service.autentica("reception", "segreta1")
    assert u is not None
    assert u.id == uid
    assert u.is_staff
    assert u.last_login_at is not None
    assert auth_service.autentica("reception", "sbagliata") is None
    assert auth_service.autentica("nessuno", "segreta1") is None


def test_username_duplicato():
    auth_service.crea_utente("reception", "segreta1")
    with pytest.raises(Duplicato) as exc:
        auth_service.crea_utente("RECEPTION", "altra-password")
    assert exc.value.status_code == 409
    assert not isinstance(exc.value, ConflittoPrenotazione)


@pytest.mark.parametrize("username,password", [("", "segreta1"), ("utente", ""), ("utente", "corta")])
def test_credenziali_non_valide(username, password):
    with pytest.raises(RegolaViolata):
        auth_service.crea_utente(username, password)


def test_registrazione_paziente_con_account():
    pid, uid = auth_service.crea_paziente_con_account("ana@example.com", "segreta1", "Ana", "Ruiz")

    u = auth_service.get_utente_by_id(uid)
    assert u.ruolo == RuoloUtente.PAZIENTE
    assert u.paziente_id == pid
    assert not u.is_staff
    assert paziente_flat(pid)["email"] == "ana@example.com"


def test_registrazione_fallita_non_lascia_paziente():
    auth_service.crea_utente("ana@example.com", "segreta1")
    with pytest.raises(Duplicato):
        auth_service.crea_paziente_con_account("ana@example.com", "segreta1", "Ana", "Ruiz")


def test_cambia_password():
    auth_service.crea_utente("reception", "segreta1")
    auth_service.cambia_password("reception", "nuova-password")
    assert auth_service.autentica("reception", "segreta1") is None
    assert auth_service.autentica("reception", "nuova-password") is not None

    with pytest.raises(NonTrovato):
        auth_service.cambia_password("nessuno", "nuova-password")


def test_utente_disattivato():
    auth_service.crea_utente("reception", "segreta1")
    assert auth_service.disattiva_utente("reception")
    assert not auth_service.disattiva_utente("reception")
    assert auth_service.autentica("reception", "segreta1") is None


def test_assicura_admin_idempotente():
    assert auth_service.assicura_admin(None, None) is None

    uid = auth_service.assicura_admin("admin", "admin-password")
    assert auth_service.assicura_admin("admin", "admin-password") == uid

    stato = auth_service.stato_admin()
    assert [(a.username, a.ruolo) for a in stato] == [("admin", "ADMIN")]


def test_token_jwt():
    token = create_access_token("user-1", extra={"ruolo": "STAFF"})
    payload = decode_token(token)
    assert payload["sub"] == "user-1"
    assert payload["ruolo"] == "STAFF"
    assert get_subject(token) == "user-1"


def test_token_non_valido_o_scaduto():
    assert get_subject("non-un-token") is None
    scaduto = create_access_token("user-1", minutes=-1)
    assert get_subject(scaduto) is None
