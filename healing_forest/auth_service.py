from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from healing_forest.auth_models import RuoloUtente, Utente
from healing_forest.auth_security import hash_password, verify_password
from healing_forest.config import ADMIN_PASSWORD, ADMIN_USERNAME
from healing_forest.db import db_session
from healing_forest.eccezioni import Duplicato, NonTrovato, RegolaViolata
from healing_forest.services import nuovo_paziente

logger = logging.getLogger(__name__)

PASSWORD_MIN_LEN = 6


def _normalizza(username: str) -> str:
    return (username or "").strip().lower()


def _valida_credenziali(username: str, password: str) -> None:
    if not username or not password:
        raise RegolaViolata("Username e password sono obbligatori.")
    if len(password) < PASSWORD_MIN_LEN:
        raise RegolaViolata(f"La password deve avere almeno {PASSWORD_MIN_LEN} caratteri.")


def _username_libero(s, username: str) -> None:
    exists = s.execute(select(Utente).where(Utente.username == username)).scalar_one_or_none()
    if exists:
        raise Duplicato("Username già registrato.")


def crea_utente(
    username: str,
    password: str,
    ruolo: RuoloUtente = RuoloUtente.PAZIENTE,
    paziente_id: str | None = None,
) -> str:
    username = _normalizza(username)
    _valida_credenziali(username, password)

    with db_session() as s:
        _username_libero(s, username)
        u = Utente(username=username, password_hash=hash_password(password), ruolo=ruolo, paziente_id=paziente_id)
        s.add(u)
        s.flush()
        logger.info("Utente creato: %s (%s)", username, ruolo.value)
        return u.id


def crea_paziente_con_account(
    username: str,
    password: str,
    nome: str,
    cognome: str,
    email: str | None = None,
    telefono: str | None = None,
) -> tuple[str, str]:
    """
    Registrazione paziente: crea anagrafica e account nella stessa transazione.
    Ritorna (paziente_id, utente_id).
    """
    username = _normalizza(username)
    _valida_credenziali(username, password)

    with db_session() as s:
        _username_libero(s, username)
        if not email and "@" in username:
            email = username
        p = nuovo_paziente(s, nome, cognome, email=email, telefono=telefono)
        u = Utente(
            username=username,
            password_hash=hash_password(password),
            ruolo=RuoloUtente.PAZIENTE,
            paziente_id=p.id,
        )
        s.add(u)
        s.flush()
        logger.info("Paziente registrato con account: %s", username)
        return p.id, u.id


def autentica(username: str, password: str) -> Utente | None:
    username = _normalizza(username)
    with db_session() as s:
        u = s.execute(select(Utente).where(Utente.username == username)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            logger.warning("Login fallito per %s", username)
            return None
        u.last_login_at = datetime.now()
        return u


def get_utente_by_id(user_id: str) -> Utente | None:
    with db_session() as s:
        return s.get(Utente, user_id)


def cambia_password(username: str, nuova_password: str) -> None:
    username = _normalizza(username)
    _valida_credenziali(username, nuova_password)
    with db_session() as s:
        u = s.execute(select(Utente).where(Utente.username == username)).scalar_one_or_none()
        if not u:
            raise NonTrovato(f"Utente '{username}' non trovato.")
        u.password_hash = hash_password(nuova_password)
        logger.info("Password aggiornata per %s", username)


def disattiva_utente(username: str) -> bool:
    with db_session() as s:
        u = s.execute(select(Utente).where(Utente.username == _normalizza(username))).scalar_one_or_none()
        if not u or not u.is_active:
            return False
        u.is_active = False
        return True


@dataclass(frozen=True)
class StatoAdmin:
    username: str
    ruolo: str
    attivo: bool
    ultimo_accesso: datetime | None


def stato_admin() -> list[StatoAdmin]:
    """Elenco degli account con accesso alla dashboard."""
    with db_session() as s:
        rows = s.scalars(
            select(Utente)
            .where(Utente.ruolo.in_([RuoloUtente.ADMIN, RuoloUtente.STAFF]))
            .order_by(Utente.username)
        )
        return [StatoAdmin(u.username, u.ruolo.value, u.is_active, u.last_login_at) for u in rows]


def assicura_admin(username: str | None = ADMIN_USERNAME, password: str | None = ADMIN_PASSWORD) -> str | None:
    """
    Crea l'admin di bootstrap se configurato (ADMIN_USERNAME/ADMIN_PASSWORD) e non ancora presente.
    Idempotente.
    """
    if not username or not password:
        return None

    username = _normalizza(username)
    with db_session() as s:
        u = s.execute(select(Utente).where(Utente.username == username)).scalar_one_or_none()
        if u:
            return u.id
    return crea_utente(username, password, ruolo=RuoloUtente.ADMIN)
