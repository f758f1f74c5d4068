from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from healing_forest.db import Base
from healing_forest.models import Paziente, new_uuid


class RuoloUtente(enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    PAZIENTE = "PAZIENTE"


class Utente(Base):
    """
    Utente applicativo per autenticazione.
    - username univoco
    - password_hash con bcrypt (passlib)
    - ruolo: ADMIN/STAFF usano la dashboard, PAZIENTE l'app di prenotazione
    """
    __tablename__ = "utenti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    ruolo: Mapped[RuoloUtente] = mapped_column(Enum(RuoloUtente), default=RuoloUtente.PAZIENTE, nullable=False)

    # valorizzato solo per i pazienti
    paziente_id: Mapped[str | None] = mapped_column(ForeignKey("pazienti.id"), nullable=True, unique=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    paziente: Mapped["Paziente"] = relationship()

    @property
    def is_staff(self) -> bool:
        return self.ruolo in (RuoloUtente.ADMIN, RuoloUtente.STAFF)
