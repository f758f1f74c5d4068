from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field, field_validator

from healing_forest import classi, crediti, notifiche, pagamenti, prenotazioni, report, services
from healing_forest.auth_models import Utente
from healing_forest.auth_security import create_access_token, get_subject
from healing_forest.auth_service import autentica, crea_paziente_con_account, get_utente_by_id
from healing_forest.config import setup_logging
from healing_forest.eccezioni import ErroreDominio
from healing_forest.models import StatoAppuntamento, StatoPagamento, StatoPagamentoTx, TipoSpazio
from healing_forest.seed import seed_base

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

app = FastAPI(title="Healing Forest API", version="1.0.0")


# Startup

@app.on_event("startup")
def startup() -> None:
    # Crea tabelle (incluse Utente) e seed base (idempotente)
    setup_logging()
    services.init_db()
    seed_base()


@app.exception_handler(ErroreDominio)
def gestisci_errore_dominio(request: Request, exc: ErroreDominio) -> JSONResponse:
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# Schemi Auth

class RegisterIn(BaseModel):
    username: str
    password: str
    nome: str = Field(..., min_length=1)
    cognome: str = Field(..., min_length=1)
    email: str | None = None
    telefono: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    username: str
    ruolo: str
    paziente_id: str | None
    is_active: bool


# Schemi Domain

def _ora_locale(v: datetime | None) -> datetime | None:
    """Orari con fuso (es. ...Z) convertiti in ora locale naive, come quelli salvati nel DB."""
    if v is not None and v.tzinfo is not None:
        return v.astimezone().replace(tzinfo=None)
    return v


class PazienteIn(BaseModel):
    nome: str
    cognome: str
    email: str | None = None
    telefono: str | None = None
    documento: str | None = None
    # se presenti crea anche l'account
    username: str | None = None
    password: str | None = None


class PazienteUpdateIn(BaseModel):
    nome: str | None = None
    cognome: str | None = None
    email: str | None = None
    telefono: str | None = None
    documento: str | None = None
    data_nascita: date | None = None


class ProfessionistaIn(BaseModel):
    nome: str
    cognome: str
    specializzazione: str
    email: str | None = None
    telefono: str | None = None


class ProfessionistaUpdateIn(BaseModel):
    nome: str | None = None
    cognome: str | None = None
    specializzazione: str | None = None
    email: str | None = None
    telefono: str | None = None
    attivo: bool | None = None


class ServizioIn(BaseModel):
    codice: str
    nome: str
    prezzo: Decimal
    durata_minuti: int = 60
    categoria: str = "generale"


class SottoServizioIn(BaseModel):
    nome: str
    prezzo: Decimal
    durata_minuti: int = 60


class SpazioIn(BaseModel):
    nome: str
    tipo: TipoSpazio = TipoSpazio.CONSULTORIO
    capienza: int = 1


class PrenotazioneIn(BaseModel):
    professionista_id: str
    servizio_id: int
    inizio: datetime
    sotto_servizio_id: int | None = None
    spazio_id: int | None = None
    note: str | None = None
    usa_crediti: Decimal | None = None

    @field_validator("inizio")
    @classmethod
    def validate_inizio(cls, v: datetime) -> datetime:
        return _ora_locale(v)


class PrenotazioneAdminIn(PrenotazioneIn):
    paziente_id: str


class AnnullaIn(BaseModel):
    motivo: str | None = None


class RiprogrammaIn(BaseModel):
    nuovo_inizio: datetime

    @field_validator("nuovo_inizio")
    @classmethod
    def validate_nuovo_inizio(cls, v: datetime) -> datetime:
        return _ora_locale(v)


class StatoIn(BaseModel):
    stato: StatoAppuntamento


class StatoPagamentoIn(BaseModel):
    stato_pagamento: StatoPagamento
    metodo: str | None = None
    riferimento: str | None = None


class ClasseIn(BaseModel):
    nome: str
    istruttore: str
    inizio: datetime
    max_capienza: int = 12
    intensita: str = "media"

    @field_validator("inizio")
    @classmethod
    def validate_inizio(cls, v: datetime) -> datetime:
        return _ora_locale(v)


class ClasseUpdateIn(BaseModel):
    nome: str | None = None
    istruttore: str | None = None
    inizio: datetime | None = None
    max_capienza: int | None = None
    intensita: str | None = None

    @field_validator("inizio")
    @classmethod
    def validate_inizio(cls, v: datetime | None) -> datetime | None:
        return _ora_locale(v)


class AcquistoPacchettoIn(BaseModel):
    codice: str
    metodo: str = "carta"
    riferimento: str | None = None


class PagamentoIn(BaseModel):
    paziente_id: str
    importo: Decimal
    metodo: str
    appuntamento_id: str | None = None
    descrizione: str | None = None
    riferimento: str | None = None


class CompletaPagamentoIn(BaseModel):
    riferimento: str | None = None


class RimborsoIn(BaseModel):
    come_credito: bool = False


class CreditoManualeIn(BaseModel):
    paziente_id: str
    importo: Decimal
    motivo: str
    descrizione: str | None = None
    scade_il: datetime | None = None

    @field_validator("scade_il")
    @classmethod
    def validate_scade_il(cls, v: datetime | None) -> datetime | None:
        return _ora_locale(v)


class PushTokenIn(BaseModel):
    token: str
    piattaforma: str | None = None


class PushIn(BaseModel):
    paziente_id: str
    titolo: str
    messaggio: str
    dati: dict[str, Any] | None = None


# Dipendenze auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> Utente:
    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token non valido")

    u = get_utente_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Utente non valido")
    return u


def require_staff(user: Utente = Depends(get_current_user)) -> Utente:
    if not user.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Accesso riservato allo staff")
    return user


def require_paziente(user: Utente = Depends(get_current_user)) -> Utente:
    if not user.paziente_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account senza profilo paziente")
    return user


def _prossimi_giorni(dal: date | None, al: date | None, giorni: int = 7) -> tuple[date, date]:
    dal = dal or date.today()
    return dal, al or dal + timedelta(days=giorni)


# AUTH endpoints

@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterIn) -> dict[str, Any]:
    paziente_id, user_id = crea_paziente_con_account(
        payload.username, payload.password, payload.nome, payload.cognome,
        email=payload.email, telefono=payload.telefono,
    )
    return {"ok": True, "user_id": user_id, "paziente_id": paziente_id}


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = autentica(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenziali non valide")

    token = create_access_token(subject=u.id, extra={"username": u.username, "ruolo": u.ruolo.value})
    return TokenOut(access_token=token)


@app.get("/api/me", response_model=MeOut)
def me(user: Utente = Depends(get_current_user)) -> MeOut:
    return MeOut(
        id=user.id, username=user.username, ruolo=user.ruolo.value,
        paziente_id=user.paziente_id, is_active=user.is_active,
    )


# PUBLIC endpoints (no JWT)

@app.get("/api/servizi")
def api_servizi(categoria: str | None = None) -> list[dict]:
    return services.lista_servizi_flat(categoria)


@app.get("/api/servizi/{servizio_id}/sotto-servizi")
def api_sotto_servizi(servizio_id: int) -> list[dict]:
    return services.lista_sotto_servizi_flat(servizio_id)


@app.get("/api/professionisti")
def api_professionisti() -> list[dict]:
    return services.lista_professionisti_flat()


@app.get("/api/spazi")
def api_spazi(tipo: TipoSpazio | None = None) -> list[dict]:
    return services.lista_spazi_flat(tipo)


@app.get("/api/classi")
def api_classi(
    dal: date | None = None,
    al: date | None = None,
    nome: str | None = None,
    istruttore: str | None = None,
) -> list[dict]:
    dal, al = _prossimi_giorni(dal, al)
    return classi.lista_classi_flat(dal, al, nome=nome, istruttore=istruttore)


@app.get("/api/pacchetti")
def api_pacchetti() -> list[dict]:
    return classi.catalogo_pacchetti()


@app.get("/api/disponibilita")
def api_disponibilita(
    professionista_id: str = Query(...),
    giorno: date = Query(...),
    servizio_id: int = Query(...),
    sotto_servizio_id: int | None = None,
    spazio_id: int | None = None,
) -> list[str]:
    return prenotazioni.slot_disponibili(professionista_id, giorno, servizio_id, sotto_servizio_id, spazio_id)


# PAZIENTE endpoints (JWT, profilo paziente)

@app.get("/api/me/appuntamenti")
def me_appuntamenti(solo_futuri: bool = False, user: Utente = Depends(require_paziente)) -> list[dict]:
    return prenotazioni.appuntamenti_paziente_flat(user.paziente_id, solo_futuri=solo_futuri)


@app.post("/api/me/appuntamenti", status_code=status.HTTP_201_CREATED)
def me_prenota(payload: PrenotazioneIn, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    esito = prenotazioni.prenota_appuntamento(paziente_id=user.paziente_id, **payload.model_dump())
    return asdict(esito)


@app.post("/api/me/appuntamenti/{appuntamento_id}/annulla")
def me_annulla(appuntamento_id: str, payload: AnnullaIn, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    esito = prenotazioni.annulla_appuntamento(appuntamento_id, payload.motivo, paziente_id=user.paziente_id)
    return asdict(esito)


@app.post("/api/me/appuntamenti/{appuntamento_id}/riprogramma")
def me_riprogramma(
    appuntamento_id: str, payload: RiprogrammaIn, user: Utente = Depends(require_paziente)
) -> dict[str, Any]:
    prenotazioni.riprogramma_appuntamento(appuntamento_id, payload.nuovo_inizio, paziente_id=user.paziente_id)
    return {"ok": True}


@app.get("/api/me/iscrizioni")
def me_iscrizioni(solo_future: bool = False, user: Utente = Depends(require_paziente)) -> list[dict]:
    return classi.iscrizioni_paziente_flat(user.paziente_id, solo_future=solo_future)


@app.post("/api/me/classi/{classe_id}/iscrizione", status_code=status.HTTP_201_CREATED)
def me_iscrivi(classe_id: str, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return asdict(classi.iscrivi(user.paziente_id, classe_id))


@app.delete("/api/me/iscrizioni/{iscrizione_id}")
def me_annulla_iscrizione(iscrizione_id: int, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return asdict(classi.annulla_iscrizione(iscrizione_id, paziente_id=user.paziente_id))


@app.post("/api/me/classi/{classe_id}/lista-attesa", status_code=status.HTTP_201_CREATED)
def me_entra_lista(classe_id: str, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return {"ok": True, "posizione": classi.entra_lista_attesa(user.paziente_id, classe_id)}


@app.delete("/api/me/classi/{classe_id}/lista-attesa")
def me_esci_lista(classe_id: str, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return {"ok": classi.esci_lista_attesa(user.paziente_id, classe_id)}


@app.get("/api/me/pacchetti")
def me_pacchetti(user: Utente = Depends(require_paziente)) -> list[dict]:
    return classi.pacchetti_paziente_flat(user.paziente_id)


@app.post("/api/me/pacchetti", status_code=status.HTTP_201_CREATED)
def me_acquista_pacchetto(payload: AcquistoPacchettoIn, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    pk_id = classi.acquista_pacchetto(user.paziente_id, payload.codice, payload.metodo, payload.riferimento)
    return {"ok": True, "pacchetto_id": pk_id}


@app.get("/api/me/crediti")
def me_crediti(user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return {
        "riepilogo": asdict(crediti.riepilogo(user.paziente_id)),
        "lotti": crediti.crediti_attivi(user.paziente_id),
    }


@app.get("/api/me/crediti/movimenti")
def me_movimenti(limit: int = 50, user: Utente = Depends(require_paziente)) -> list[dict]:
    return crediti.storico_movimenti(user.paziente_id, limit=limit)


@app.get("/api/me/notifiche")
def me_notifiche(solo_non_lette: bool = False, user: Utente = Depends(require_paziente)) -> list[dict]:
    return notifiche.notifiche_paziente(user.paziente_id, solo_non_lette=solo_non_lette)


@app.post("/api/me/notifiche/{notifica_id}/letta")
def me_notifica_letta(notifica_id: int, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return {"ok": notifiche.marca_notifica_letta(notifica_id, paziente_id=user.paziente_id)}


@app.post("/api/me/push-token", status_code=status.HTTP_201_CREATED)
def me_push_token(payload: PushTokenIn, user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return {"ok": True, "id": notifiche.registra_push_token(user.paziente_id, payload.token, payload.piattaforma)}


@app.delete("/api/me/push-token")
def me_rimuovi_push_token(token: str = Query(...), user: Utente = Depends(require_paziente)) -> dict[str, Any]:
    return {"ok": notifiche.rimuovi_push_token(token, paziente_id=user.paziente_id)}


# ADMIN endpoints (JWT, ruolo ADMIN o STAFF)

@app.get("/api/admin/pazienti")
def admin_pazienti(cerca: str | None = None, solo_attivi: bool = True, user=Depends(require_staff)) -> list[dict]:
    return services.lista_pazienti_flat(cerca, solo_attivi=solo_attivi)


@app.post("/api/admin/pazienti", status_code=status.HTTP_201_CREATED)
def admin_crea_paziente(payload: PazienteIn, user=Depends(require_staff)) -> dict[str, Any]:
    if payload.username and payload.password:
        pid, uid = crea_paziente_con_account(
            payload.username, payload.password, payload.nome, payload.cognome,
            email=payload.email, telefono=payload.telefono,
        )
        return {"ok": True, "paziente_id": pid, "user_id": uid}
    pid = services.crea_paziente(payload.nome, payload.cognome, payload.email, payload.telefono, payload.documento)
    return {"ok": True, "paziente_id": pid}


@app.get("/api/admin/pazienti/{paziente_id}")
def admin_paziente(paziente_id: str, user=Depends(require_staff)) -> dict[str, Any]:
    return services.paziente_flat(paziente_id)


@app.patch("/api/admin/pazienti/{paziente_id}")
def admin_aggiorna_paziente(paziente_id: str, payload: PazienteUpdateIn, user=Depends(require_staff)) -> dict:
    services.aggiorna_paziente(paziente_id, **payload.model_dump(exclude_unset=True))
    return {"ok": True}


@app.delete("/api/admin/pazienti/{paziente_id}")
def admin_disattiva_paziente(paziente_id: str, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": services.disattiva_paziente(paziente_id)}


@app.get("/api/admin/pazienti/{paziente_id}/crediti")
def admin_crediti_paziente(paziente_id: str, user=Depends(require_staff)) -> dict[str, Any]:
    return {
        "riepilogo": asdict(crediti.riepilogo(paziente_id)),
        "lotti": crediti.crediti_attivi(paziente_id),
        "movimenti": crediti.storico_movimenti(paziente_id),
    }


@app.get("/api/admin/professionisti")
def admin_professionisti(solo_attivi: bool = False, user=Depends(require_staff)) -> list[dict]:
    return services.lista_professionisti_flat(solo_attivi=solo_attivi)


@app.post("/api/admin/professionisti", status_code=status.HTTP_201_CREATED)
def admin_crea_professionista(payload: ProfessionistaIn, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "professionista_id": services.crea_professionista(**payload.model_dump())}


@app.patch("/api/admin/professionisti/{professionista_id}")
def admin_aggiorna_professionista(
    professionista_id: str, payload: ProfessionistaUpdateIn, user=Depends(require_staff)
) -> dict[str, Any]:
    services.aggiorna_professionista(professionista_id, **payload.model_dump(exclude_unset=True))
    return {"ok": True}


@app.post("/api/admin/servizi", status_code=status.HTTP_201_CREATED)
def admin_crea_servizio(payload: ServizioIn, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "servizio_id": services.crea_servizio(**payload.model_dump())}


@app.post("/api/admin/servizi/{servizio_id}/sotto-servizi", status_code=status.HTTP_201_CREATED)
def admin_crea_sotto_servizio(servizio_id: int, payload: SottoServizioIn, user=Depends(require_staff)) -> dict:
    return {"ok": True, "sotto_servizio_id": services.crea_sotto_servizio(servizio_id, **payload.model_dump())}


@app.post("/api/admin/spazi", status_code=status.HTTP_201_CREATED)
def admin_crea_spazio(payload: SpazioIn, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "spazio_id": services.crea_spazio(payload.nome, payload.tipo, payload.capienza)}


@app.get("/api/admin/spazi/{spazio_id}/calendario")
def admin_calendario_spazio(
    spazio_id: int, dal: date | None = None, al: date | None = None, user=Depends(require_staff)
) -> list[dict]:
    dal, al = _prossimi_giorni(dal, al)
    return prenotazioni.calendario_spazio_flat(spazio_id, dal, al)


@app.get("/api/admin/appuntamenti")
def admin_appuntamenti(
    stato: StatoAppuntamento | None = None,
    professionista_id: str | None = None,
    paziente_id: str | None = None,
    dal: date | None = None,
    al: date | None = None,
    limit: int = 200,
    user=Depends(require_staff),
) -> list[dict]:
    return prenotazioni.lista_appuntamenti_flat(stato, professionista_id, paziente_id, dal, al, limit)


@app.get("/api/admin/appuntamenti/oggi")
def admin_appuntamenti_oggi(giorno: date | None = None, user=Depends(require_staff)) -> list[dict]:
    return prenotazioni.appuntamenti_del_giorno_flat(giorno)


@app.post("/api/admin/appuntamenti", status_code=status.HTTP_201_CREATED)
def admin_prenota(payload: PrenotazioneAdminIn, user=Depends(require_staff)) -> dict[str, Any]:
    return asdict(prenotazioni.prenota_appuntamento(**payload.model_dump(), preavviso=False))


@app.get("/api/admin/appuntamenti/{appuntamento_id}")
def admin_appuntamento(appuntamento_id: str, user=Depends(require_staff)) -> dict[str, Any]:
    return prenotazioni.appuntamento_flat(appuntamento_id)


@app.patch("/api/admin/appuntamenti/{appuntamento_id}/stato")
def admin_stato_appuntamento(appuntamento_id: str, payload: StatoIn, user=Depends(require_staff)) -> dict:
    prenotazioni.aggiorna_stato(appuntamento_id, payload.stato)
    return {"ok": True}


@app.patch("/api/admin/appuntamenti/{appuntamento_id}/pagamento")
def admin_pagamento_appuntamento(
    appuntamento_id: str, payload: StatoPagamentoIn, user=Depends(require_staff)
) -> dict[str, Any]:
    prenotazioni.aggiorna_pagamento_appuntamento(
        appuntamento_id, payload.stato_pagamento, payload.metodo, payload.riferimento
    )
    return {"ok": True}


@app.post("/api/admin/appuntamenti/{appuntamento_id}/annulla")
def admin_annulla(appuntamento_id: str, payload: AnnullaIn, user=Depends(require_staff)) -> dict[str, Any]:
    return asdict(prenotazioni.annulla_appuntamento(appuntamento_id, payload.motivo))


@app.post("/api/admin/appuntamenti/{appuntamento_id}/riprogramma")
def admin_riprogramma(appuntamento_id: str, payload: RiprogrammaIn, user=Depends(require_staff)) -> dict:
    prenotazioni.riprogramma_appuntamento(appuntamento_id, payload.nuovo_inizio)
    return {"ok": True}


@app.get("/api/admin/agenda")
def admin_agenda(
    professionista_id: str = Query(...),
    giorno: date = Query(...),
    user=Depends(require_staff),
) -> list[dict]:
    return prenotazioni.agenda_giornaliera_flat(professionista_id, giorno)


@app.post("/api/admin/classi", status_code=status.HTTP_201_CREATED)
def admin_crea_classe(payload: ClasseIn, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "classe_id": classi.crea_classe(**payload.model_dump())}


@app.post("/api/admin/classi/genera")
def admin_genera_classi(giorni: int = 14, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "create": classi.genera_calendario(giorni)}


@app.get("/api/admin/classi/{classe_id}")
def admin_classe(classe_id: str, user=Depends(require_staff)) -> dict[str, Any]:
    return {
        **classi.classe_flat(classe_id),
        "partecipanti": classi.partecipanti_classe_flat(classe_id),
        "lista_attesa": classi.lista_attesa_flat(classe_id),
    }


@app.patch("/api/admin/classi/{classe_id}")
def admin_aggiorna_classe(classe_id: str, payload: ClasseUpdateIn, user=Depends(require_staff)) -> dict:
    classi.aggiorna_classe(classe_id, **payload.model_dump(exclude_unset=True))
    return {"ok": True}


@app.post("/api/admin/classi/{classe_id}/annulla")
def admin_annulla_classe(classe_id: str, payload: AnnullaIn, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "iscritti_avvisati": classi.annulla_classe(classe_id, payload.motivo)}


@app.delete("/api/admin/classi/{classe_id}")
def admin_elimina_classe(classe_id: str, user=Depends(require_staff)) -> dict[str, Any]:
    classi.elimina_classe(classe_id)
    return {"ok": True}


@app.post("/api/admin/iscrizioni/{iscrizione_id}/presenza")
def admin_presenza(iscrizione_id: int, user=Depends(require_staff)) -> dict[str, Any]:
    classi.segna_presenza(iscrizione_id)
    return {"ok": True}


@app.get("/api/admin/pagamenti")
def admin_pagamenti(
    stato: StatoPagamentoTx | None = None,
    metodo: str | None = None,
    dal: date | None = None,
    al: date | None = None,
    paziente_id: str | None = None,
    user=Depends(require_staff),
) -> list[dict]:
    return pagamenti.lista_pagamenti_flat(stato, metodo, dal, al, paziente_id)


@app.get("/api/admin/pagamenti/statistiche")
def admin_statistiche_pagamenti(dal: date | None = None, al: date | None = None, user=Depends(require_staff)) -> dict:
    return pagamenti.statistiche_pagamenti(dal, al)


@app.post("/api/admin/pagamenti", status_code=status.HTTP_201_CREATED)
def admin_registra_pagamento(payload: PagamentoIn, user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "pagamento_id": pagamenti.registra_pagamento(**payload.model_dump())}


@app.post("/api/admin/pagamenti/{pagamento_id}/completa")
def admin_completa_pagamento(pagamento_id: str, payload: CompletaPagamentoIn, user=Depends(require_staff)) -> dict:
    pagamenti.completa_pagamento(pagamento_id, payload.riferimento)
    return {"ok": True}


@app.post("/api/admin/pagamenti/{pagamento_id}/fallito")
def admin_pagamento_fallito(pagamento_id: str, payload: AnnullaIn, user=Depends(require_staff)) -> dict:
    pagamenti.fallisci_pagamento(pagamento_id, payload.motivo)
    return {"ok": True}


@app.post("/api/admin/pagamenti/{pagamento_id}/rimborso")
def admin_rimborso(pagamento_id: str, payload: RimborsoIn, user: Utente = Depends(require_staff)) -> dict:
    return asdict(pagamenti.rimborsa_pagamento(pagamento_id, payload.come_credito, creato_da=user.id))


@app.get("/api/admin/crediti")
def admin_crediti(solo_con_saldo: bool = False, user=Depends(require_staff)) -> list[dict]:
    return [asdict(r) for r in crediti.riepilogo_tutti(solo_con_saldo=solo_con_saldo)]


@app.post("/api/admin/crediti", status_code=status.HTTP_201_CREATED)
def admin_credito_manuale(payload: CreditoManualeIn, user: Utente = Depends(require_staff)) -> dict[str, Any]:
    cid = crediti.crea_credito_manuale(
        payload.paziente_id, payload.importo, payload.motivo,
        descrizione=payload.descrizione, creato_da=user.id, scade_il=payload.scade_il,
    )
    return {"ok": True, "credito_id": cid}


@app.post("/api/admin/crediti/scadenza")
def admin_scadi_crediti(user=Depends(require_staff)) -> dict[str, Any]:
    return {"ok": True, "lotti_scaduti": crediti.scadi_crediti()}


@app.get("/api/admin/crediti/verifica")
def admin_verifica_saldi(user=Depends(require_staff)) -> dict[str, Any]:
    incoerenze = crediti.verifica_saldi()
    return {"ok": not incoerenze, "incoerenze": incoerenze}


@app.get("/api/admin/dashboard")
def admin_dashboard(user=Depends(require_staff)) -> dict[str, Any]:
    return report.kpi_dashboard()


@app.get("/api/admin/report/incassi")
def admin_incassi(mesi: int = 6, user=Depends(require_staff)) -> list[dict]:
    return report.incassi_per_mese(mesi)


@app.get("/api/admin/report/appuntamenti")
def admin_report_appuntamenti(dal: date | None = None, al: date | None = None, user=Depends(require_staff)) -> dict:
    return report.appuntamenti_per_stato(dal, al)


@app.get("/api/admin/report/classi")
def admin_report_classi(dal: date | None = None, al: date | None = None, user=Depends(require_staff)) -> dict:
    dal, al = _prossimi_giorni(dal, al)
    return report.occupazione_classi(dal, al)


@app.post("/api/admin/push")
def admin_push(payload: PushIn, user=Depends(require_staff)) -> dict[str, Any]:
    return notifiche.invia_notifica_paziente(payload.paziente_id, payload.titolo, payload.messaggio, dati=payload.dati)


@app.post("/api/admin/push/pendenti")
def admin_push_pendenti(user=Depends(require_staff)) -> dict[str, Any]:
    return {"inviate": notifiche.invia_push_pendenti()}


@app.post("/api/admin/promemoria/scansiona")
def admin_scansiona_promemoria(user=Depends(require_staff)) -> dict[str, Any]:
    return asdict(notifiche.scansiona_promemoria())


@app.get("/api/notifiche/pendenti")
def api_notifiche_pendenti(limit: int = 200, user=Depends(require_staff)) -> list[dict]:
    return notifiche.notifiche_pendenti_flat(limit=limit)

