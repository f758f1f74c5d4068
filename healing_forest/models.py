from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from healing_forest.db import Base

Importo = Numeric(12, 2)


def new_uuid() -> str:
    return str(uuid.uuid4())


class StatoAppuntamento(enum.Enum):
    PENDENTE = "PENDENTE"
    CONFERMATO = "CONFERMATO"
    COMPLETATO = "COMPLETATO"
    ANNULLATO = "ANNULLATO"
    NON_PRESENTATO = "NON_PRESENTATO"


class StatoPagamento(enum.Enum):
    PENDENTE = "PENDENTE"
    PAGATO = "PAGATO"
    FALLITO = "FALLITO"
    RIMBORSATO = "RIMBORSATO"
    ANNULLATO = "ANNULLATO"


class StatoPagamentoTx(enum.Enum):
    PENDENTE = "PENDENTE"
    COMPLETATO = "COMPLETATO"
    FALLITO = "FALLITO"
    RIMBORSATO = "RIMBORSATO"


class TipoSpazio(enum.Enum):
    CONSULTORIO = "CONSULTORIO"
    CAMERA_IPERBARICA = "CAMERA_IPERBARICA"
    SALA = "SALA"


class StatoClasse(enum.Enum):
    PROGRAMMATA = "PROGRAMMATA"
    ANNULLATA = "ANNULLATA"
    COMPLETATA = "COMPLETATA"


class StatoIscrizione(enum.Enum):
    ISCRITTO = "ISCRITTO"
    ANNULLATO = "ANNULLATO"
    PRESENTE = "PRESENTE"


class TipoCredito(enum.Enum):
    CANCELLAZIONE = "CANCELLAZIONE"
    RIMBORSO = "RIMBORSO"
    PROMOZIONE = "PROMOZIONE"
    AGGIUSTAMENTO_ADMIN = "AGGIUSTAMENTO_ADMIN"


class TipoMovimento(enum.Enum):
    ACCREDITO = "ACCREDITO"
    UTILIZZO = "UTILIZZO"
    SCADENZA = "SCADENZA"


class TipoNotifica(enum.Enum):
    CONFERMA = "CONFERMA"
    ANNULLAMENTO = "ANNULLAMENTO"
    SPOSTAMENTO = "SPOSTAMENTO"
    PROMEMORIA = "PROMEMORIA"
    PROMEMORIA_CLASSE = "PROMEMORIA_CLASSE"
    POSTO_LIBERO = "POSTO_LIBERO"
    CREDITO = "CREDITO"
    PAGAMENTO = "PAGAMENTO"
    GENERALE = "GENERALE"


# =========================
# Anagrafiche
# =========================
class Paziente(Base):
    __tablename__ = "pazienti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    nome: Mapped[str] = mapped_column(String(80), nullable=False)
    cognome: Mapped[str] = mapped_column(String(80), nullable=False)
    data_nascita: Mapped[date | None] = mapped_column(Date, nullable=True)
    telefono: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True, unique=True)
    documento: Mapped[str | None] = mapped_column(String(30), nullable=True, unique=True)
    attivo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    creato_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    # cache del saldo: aggiornata nella stessa transazione del movimento
    saldo_crediti: Mapped[Decimal] = mapped_column(Importo, default=Decimal("0"), nullable=False)

    appuntamenti: Mapped[list["Appuntamento"]] = relationship(back_populates="paziente", cascade="all, delete-orphan")
    iscrizioni: Mapped[list["IscrizioneClasse"]] = relationship(back_populates="paziente", cascade="all, delete-orphan")
    pacchetti: Mapped[list["PacchettoPaziente"]] = relationship(back_populates="paziente", cascade="all, delete-orphan")
    crediti: Mapped[list["Credito"]] = relationship(back_populates="paziente", cascade="all, delete-orphan")
    movimenti: Mapped[list["MovimentoCredito"]] = relationship(back_populates="paziente", cascade="all, delete-orphan")
    push_tokens: Mapped[list["PushToken"]] = relationship(back_populates="paziente", cascade="all, delete-orphan")

    @property
    def nome_completo(self) -> str:
        return f"{self.nome} {self.cognome}"

    def __repr__(self) -> str:
        return f"Paziente({self.nome} {self.cognome})"


class Professionista(Base):
    __tablename__ = "professionisti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    nome: Mapped[str] = mapped_column(String(80), nullable=False)
    cognome: Mapped[str] = mapped_column(String(80), nullable=False)
    specializzazione: Mapped[str] = mapped_column(String(120), nullable=False)
    telefono: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    attivo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    appuntamenti: Mapped[list["Appuntamento"]] = relationship(back_populates="professionista")

    def __repr__(self) -> str:
        return f"Professionista({self.nome} {self.cognome}, {self.specializzazione})"


# =========================
# Catalogo
# =========================
class Servizio(Base):
    __tablename__ = "servizi"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    codice: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    nome: Mapped[str] = mapped_column(String(120), nullable=False)
    categoria: Mapped[str] = mapped_column(String(60), nullable=False, default="generale")
    prezzo: Mapped[Decimal] = mapped_column(Importo, nullable=False, default=Decimal("0"))
    durata_minuti: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    attivo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    sotto_servizi: Mapped[list["SottoServizio"]] = relationship(
        back_populates="servizio", cascade="all, delete-orphan"
    )


class SottoServizio(Base):
    __tablename__ = "sotto_servizi"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    servizio_id: Mapped[int] = mapped_column(ForeignKey("servizi.id"), nullable=False)
    nome: Mapped[str] = mapped_column(String(120), nullable=False)
    prezzo: Mapped[Decimal] = mapped_column(Importo, nullable=False)
    durata_minuti: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    attivo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    servizio: Mapped["Servizio"] = relationship(back_populates="sotto_servizi")


class Spazio(Base):
    __tablename__ = "spazi"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nome: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    tipo: Mapped[TipoSpazio] = mapped_column(Enum(TipoSpazio), nullable=False, default=TipoSpazio.CONSULTORIO)
    capienza: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    attivo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    appuntamenti: Mapped[list["Appuntamento"]] = relationship(back_populates="spazio")


# =========================
# Appuntamenti
# =========================
class Appuntamento(Base):
    __tablename__ = "appuntamenti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    professionista_id: Mapped[str] = mapped_column(ForeignKey("professionisti.id"), nullable=False)
    servizio_id: Mapped[int] = mapped_column(ForeignKey("servizi.id"), nullable=False)
    sotto_servizio_id: Mapped[int | None] = mapped_column(ForeignKey("sotto_servizi.id"), nullable=True)
    spazio_id: Mapped[int | None] = mapped_column(ForeignKey("spazi.id"), nullable=True)

    inizio: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    fine: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    stato: Mapped[StatoAppuntamento] = mapped_column(
        Enum(StatoAppuntamento), default=StatoAppuntamento.CONFERMATO, nullable=False
    )
    stato_pagamento: Mapped[StatoPagamento] = mapped_column(
        Enum(StatoPagamento), default=StatoPagamento.PENDENTE, nullable=False
    )

    importo: Mapped[Decimal] = mapped_column(Importo, nullable=False, default=Decimal("0"))
    crediti_usati: Mapped[Decimal] = mapped_column(Importo, nullable=False, default=Decimal("0"))
    metodo_pagamento: Mapped[str | None] = mapped_column(String(30), nullable=True)
    riferimento_pagamento: Mapped[str | None] = mapped_column(String(120), nullable=True)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    motivo_annullamento: Mapped[str | None] = mapped_column(Text, nullable=True)
    annullato_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    promemoria_24h_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    promemoria_2h_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    creato_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    paziente: Mapped["Paziente"] = relationship(back_populates="appuntamenti")
    professionista: Mapped["Professionista"] = relationship(back_populates="appuntamenti")
    servizio: Mapped["Servizio"] = relationship()
    sotto_servizio: Mapped["SottoServizio"] = relationship()
    spazio: Mapped["Spazio"] = relationship(back_populates="appuntamenti")
    notifiche: Mapped[list["Notifica"]] = relationship(back_populates="appuntamento", cascade="all, delete-orphan")


# =========================
# Classi Breathe & Move
# =========================
class ClasseBreatheMove(Base):
    __tablename__ = "classi_breathe_move"
    __table_args__ = (UniqueConstraint("nome", "inizio", name="uq_classe_nome_inizio"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    nome: Mapped[str] = mapped_column(String(80), nullable=False)
    istruttore: Mapped[str] = mapped_column(String(80), nullable=False)
    inizio: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    fine: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    max_capienza: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    iscritti: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    intensita: Mapped[str] = mapped_column(String(20), nullable=False, default="media")
    stato: Mapped[StatoClasse] = mapped_column(Enum(StatoClasse), default=StatoClasse.PROGRAMMATA, nullable=False)

    iscrizioni: Mapped[list["IscrizioneClasse"]] = relationship(back_populates="classe", cascade="all, delete-orphan")
    lista_attesa: Mapped[list["ListaAttesaClasse"]] = relationship(
        back_populates="classe", cascade="all, delete-orphan"
    )

    @property
    def posti_liberi(self) -> int:
        return max(0, self.max_capienza - self.iscritti)


class IscrizioneClasse(Base):
    __tablename__ = "iscrizioni_classi"
    __table_args__ = (UniqueConstraint("paziente_id", "classe_id", name="uq_iscrizione_paziente_classe"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    classe_id: Mapped[str] = mapped_column(ForeignKey("classi_breathe_move.id"), nullable=False)
    pacchetto_id: Mapped[int | None] = mapped_column(ForeignKey("pacchetti_pazienti.id"), nullable=True)

    stato: Mapped[StatoIscrizione] = mapped_column(
        Enum(StatoIscrizione), default=StatoIscrizione.ISCRITTO, nullable=False
    )
    stato_pagamento: Mapped[StatoPagamento] = mapped_column(
        Enum(StatoPagamento), default=StatoPagamento.PENDENTE, nullable=False
    )
    creata_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    annullata_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    paziente: Mapped["Paziente"] = relationship(back_populates="iscrizioni")
    classe: Mapped["ClasseBreatheMove"] = relationship(back_populates="iscrizioni")
    pacchetto: Mapped["PacchettoPaziente"] = relationship()


class ListaAttesaClasse(Base):
    __tablename__ = "lista_attesa_classi"
    __table_args__ = (UniqueConstraint("paziente_id", "classe_id", name="uq_attesa_paziente_classe"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    classe_id: Mapped[str] = mapped_column(ForeignKey("classi_breathe_move.id"), nullable=False)
    posizione: Mapped[int] = mapped_column(Integer, nullable=False)
    inserita_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    paziente: Mapped["Paziente"] = relationship()
    classe: Mapped["ClasseBreatheMove"] = relationship(back_populates="lista_attesa")


class PacchettoPaziente(Base):
    __tablename__ = "pacchetti_pazienti"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    codice: Mapped[str] = mapped_column(String(30), nullable=False)
    classi_totali: Mapped[int | None] = mapped_column(Integer, nullable=True)  # NULL = illimitato
    classi_rimanenti: Mapped[int | None] = mapped_column(Integer, nullable=True)
    valido_dal: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valido_al: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attivo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    paziente: Mapped["Paziente"] = relationship(back_populates="pacchetti")

    @property
    def illimitato(self) -> bool:
        return self.classi_totali is None


# =========================
# Crediti (unico ledger)
# =========================
class Credito(Base):
    __tablename__ = "crediti"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    tipo: Mapped[TipoCredito] = mapped_column(Enum(TipoCredito), nullable=False)
    importo: Mapped[Decimal] = mapped_column(Importo, nullable=False)
    residuo: Mapped[Decimal] = mapped_column(Importo, nullable=False)
    descrizione: Mapped[str | None] = mapped_column(Text, nullable=True)
    scade_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    appuntamento_origine_id: Mapped[str | None] = mapped_column(ForeignKey("appuntamenti.id"), nullable=True)
    creato_da: Mapped[str | None] = mapped_column(String(36), nullable=True)
    creato_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    paziente: Mapped["Paziente"] = relationship(back_populates="crediti")


class MovimentoCredito(Base):
    __tablename__ = "movimenti_credito"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    credito_id: Mapped[int | None] = mapped_column(ForeignKey("crediti.id"), nullable=True)
    appuntamento_id: Mapped[str | None] = mapped_column(ForeignKey("appuntamenti.id"), nullable=True)
    tipo: Mapped[TipoMovimento] = mapped_column(Enum(TipoMovimento), nullable=False)

    # con segno: positivo = entrata, negativo = uscita
    importo: Mapped[Decimal] = mapped_column(Importo, nullable=False)
    saldo_prima: Mapped[Decimal] = mapped_column(Importo, nullable=False)
    saldo_dopo: Mapped[Decimal] = mapped_column(Importo, nullable=False)

    descrizione: Mapped[str | None] = mapped_column(Text, nullable=True)
    creato_da: Mapped[str | None] = mapped_column(String(36), nullable=True)
    creato_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    paziente: Mapped["Paziente"] = relationship(back_populates="movimenti")


# =========================
# Pagamenti
# =========================
class Pagamento(Base):
    __tablename__ = "pagamenti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    appuntamento_id: Mapped[str | None] = mapped_column(ForeignKey("appuntamenti.id"), nullable=True)
    pacchetto_id: Mapped[int | None] = mapped_column(ForeignKey("pacchetti_pazienti.id"), nullable=True)

    importo: Mapped[Decimal] = mapped_column(Importo, nullable=False)
    metodo: Mapped[str] = mapped_column(String(30), nullable=False)
    stato: Mapped[StatoPagamentoTx] = mapped_column(
        Enum(StatoPagamentoTx), default=StatoPagamentoTx.PENDENTE, nullable=False
    )
    riferimento: Mapped[str | None] = mapped_column(String(120), nullable=True)
    descrizione: Mapped[str | None] = mapped_column(Text, nullable=True)

    creato_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    elaborato_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rimborsato_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    paziente: Mapped["Paziente"] = relationship()
    appuntamento: Mapped["Appuntamento"] = relationship()


# =========================
# Notifiche
# =========================
class Notifica(Base):
    __tablename__ = "notifiche"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paziente_id: Mapped[str | None] = mapped_column(ForeignKey("pazienti.id"), nullable=True)
    tipo: Mapped[TipoNotifica] = mapped_column(Enum(TipoNotifica), nullable=False)
    titolo: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    messaggio: Mapped[str] = mapped_column(Text, nullable=False)

    creata_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    inviata_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    letta_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # opzionale: notifica riferita a un appuntamento o a una classe
    appuntamento_id: Mapped[str | None] = mapped_column(ForeignKey("appuntamenti.id"), nullable=True)
    classe_id: Mapped[str | None] = mapped_column(ForeignKey("classi_breathe_move.id"), nullable=True)

    appuntamento: Mapped["Appuntamento"] = relationship(back_populates="notifiche")
    paziente: Mapped["Paziente"] = relationship()


class PushToken(Base):
    __tablename__ = "push_tokens"
    __table_args__ = (UniqueConstraint("token", name="uq_push_token"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    piattaforma: Mapped[str | None] = mapped_column(String(20), nullable=True)
    creato_il: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    paziente: Mapped["Paziente"] = relationship(back_populates="push_tokens")
