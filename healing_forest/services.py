from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from healing_forest.db import Base, db_session, engine
from healing_forest.eccezioni import Duplicato, NonTrovato, RegolaViolata
from healing_forest.models import Paziente, Professionista, Servizio, SottoServizio, Spazio, TipoSpazio

logger = logging.getLogger(__name__)


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea le tabelle se non esistono."""
    # registra le tabelle Auth nel metadata
    from healing_forest import auth_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


# =========================
# Pazienti
# =========================
def nuovo_paziente(
    s: Session,
    nome: str,
    cognome: str,
    email: str | None = None,
    telefono: str | None = None,
    documento: str | None = None,
) -> Paziente:
    """Crea il paziente nella sessione data (usata anche dalla registrazione con account)."""
    if not (nome or "").strip() or not (cognome or "").strip():
        raise RegolaViolata("Nome e cognome sono obbligatori.")

    email = email.strip().lower() if email else None
    if email and s.execute(select(Paziente.id).where(Paziente.email == email)).first():
        raise Duplicato(f"Esiste già un paziente con email {email}.")

    p = Paziente(nome=nome.strip(), cognome=cognome.strip(), email=email, telefono=telefono, documento=documento)
    s.add(p)
    s.flush()
    return p


def crea_paziente(
    nome: str,
    cognome: str,
    email: str | None = None,
    telefono: str | None = None,
    documento: str | None = None,
) -> str:
    with db_session() as s:
        p = nuovo_paziente(s, nome, cognome, email=email, telefono=telefono, documento=documento)
        logger.info("Paziente creato: %s", p.id)
        return p.id


CAMPI_PAZIENTE = {"nome", "cognome", "email", "telefono", "documento", "data_nascita"}


def aggiorna_paziente(paziente_id: str, **campi) -> None:
    sconosciuti = set(campi) - CAMPI_PAZIENTE
    if sconosciuti:
        raise RegolaViolata(f"Campi non modificabili: {', '.join(sorted(sconosciuti))}")

    with db_session() as s:
        p = s.get(Paziente, paziente_id)
        if not p:
            raise NonTrovato("Paziente non trovato.")
        for k, v in campi.items():
            setattr(p, k, v)


def disattiva_paziente(paziente_id: str) -> bool:
    with db_session() as s:
        p = s.get(Paziente, paziente_id)
        if not p or not p.attivo:
            return False
        p.attivo = False
        return True


def get_paziente(paziente_id: str) -> Paziente:
    with db_session() as s:
        p = s.get(Paziente, paziente_id)
        if not p:
            raise NonTrovato("Paziente non trovato.")
        return p


def _paziente_dict(p: Paziente) -> dict:
    return {
        "id": p.id,
        "nome": p.nome,
        "cognome": p.cognome,
        "email": p.email,
        "telefono": p.telefono,
        "documento": p.documento,
        "attivo": p.attivo,
        "saldo_crediti": float(p.saldo_crediti),
        "creato_il": p.creato_il.isoformat(),
    }


def lista_pazienti_flat(cerca: str | None = None, solo_attivi: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(Paziente).order_by(Paziente.cognome, Paziente.nome)
        if solo_attivi:
            q = q.where(Paziente.attivo.is_(True))
        if cerca:
            like = f"%{cerca.strip().lower()}%"
            q = q.where(
                or_(
                    func.lower(Paziente.nome).like(like),
                    func.lower(Paziente.cognome).like(like),
                    func.lower(Paziente.email).like(like),
                )
            )
        return [_paziente_dict(p) for p in s.scalars(q)]


def paziente_flat(paziente_id: str) -> dict:
    return _paziente_dict(get_paziente(paziente_id))


# =========================
# Professionisti
# =========================
def crea_professionista(
    nome: str,
    cognome: str,
    specializzazione: str,
    email: str | None = None,
    telefono: str | None = None,
) -> str:
    with db_session() as s:
        m = Professionista(
            nome=nome.strip(),
            cognome=cognome.strip(),
            specializzazione=specializzazione.strip(),
            email=email,
            telefono=telefono,
        )
        s.add(m)
        s.flush()
        return m.id


def aggiorna_professionista(professionista_id: str, **campi) -> None:
    consentiti = {"nome", "cognome", "specializzazione", "email", "telefono", "attivo"}
    if set(campi) - consentiti:
        raise RegolaViolata("Campi professionista non validi.")
    with db_session() as s:
        m = s.get(Professionista, professionista_id)
        if not m:
            raise NonTrovato("Professionista non trovato.")
        for k, v in campi.items():
            setattr(m, k, v)


def lista_professionisti_flat(solo_attivi: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(
            Professionista.id,
            Professionista.nome,
            Professionista.cognome,
            Professionista.specializzazione,
            Professionista.email,
            Professionista.attivo,
        ).order_by(Professionista.cognome, Professionista.nome)
        if solo_attivi:
            q = q.where(Professionista.attivo.is_(True))
        return [
            {
                "id": r.id,
                "nome": r.nome,
                "cognome": r.cognome,
                "specializzazione": r.specializzazione,
                "email": r.email,
                "attivo": r.attivo,
            }
            for r in s.execute(q).all()
        ]


# =========================
# Catalogo servizi
# =========================
def crea_servizio(
    codice: str,
    nome: str,
    prezzo: Decimal | int | str,
    durata_minuti: int = 60,
    categoria: str = "generale",
) -> int:
    with db_session() as s:
        if s.execute(select(Servizio.id).where(Servizio.codice == codice)).first():
            raise Duplicato(f"Servizio '{codice}' già presente.")
        sv = Servizio(
            codice=codice, nome=nome, prezzo=Decimal(str(prezzo)), durata_minuti=durata_minuti, categoria=categoria
        )
        s.add(sv)
        s.flush()
        return sv.id


def crea_sotto_servizio(servizio_id: int, nome: str, prezzo: Decimal | int | str, durata_minuti: int = 60) -> int:
    with db_session() as s:
        if not s.get(Servizio, servizio_id):
            raise NonTrovato("Servizio non trovato.")
        ss = SottoServizio(servizio_id=servizio_id, nome=nome, prezzo=Decimal(str(prezzo)), durata_minuti=durata_minuti)
        s.add(ss)
        s.flush()
        return ss.id


def lista_servizi_flat(categoria: str | None = None) -> list[dict]:
    with db_session() as s:
        q = select(Servizio).where(Servizio.attivo.is_(True)).order_by(Servizio.categoria, Servizio.nome)
        if categoria:
            q = q.where(Servizio.categoria == categoria)
        return [
            {
                "id": sv.id,
                "codice": sv.codice,
                "nome": sv.nome,
                "categoria": sv.categoria,
                "prezzo": float(sv.prezzo),
                "durata_minuti": sv.durata_minuti,
            }
            for sv in s.scalars(q)
        ]


def lista_sotto_servizi_flat(servizio_id: int) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(
            select(SottoServizio)
            .where(SottoServizio.servizio_id == servizio_id, SottoServizio.attivo.is_(True))
            .order_by(SottoServizio.nome)
        )
        return [
            {"id": r.id, "nome": r.nome, "prezzo": float(r.prezzo), "durata_minuti": r.durata_minuti} for r in rows
        ]


# =========================
# Spazi
# =========================
def crea_spazio(nome: str, tipo: TipoSpazio = TipoSpazio.CONSULTORIO, capienza: int = 1) -> int:
    with db_session() as s:
        sp = Spazio(nome=nome.strip(), tipo=tipo, capienza=capienza)
        s.add(sp)
        s.flush()
        return sp.id


def lista_spazi_flat(tipo: TipoSpazio | None = None) -> list[dict]:
    with db_session() as s:
        q = select(Spazio).where(Spazio.attivo.is_(True)).order_by(Spazio.nome)
        if tipo:
            q = q.where(Spazio.tipo == tipo)
        return [{"id": r.id, "nome": r.nome, "tipo": r.tipo.value, "capienza": r.capienza} for r in s.scalars(q)]
