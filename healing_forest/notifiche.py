from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import requests
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from healing_forest.config import EXPO_PUSH_URL, PUSH_TIMEOUT_SECONDS
from healing_forest.db import db_session
from healing_forest.eccezioni import NonTrovato, RegolaViolata
from healing_forest.models import (
    Appuntamento,
    ClasseBreatheMove,
    IscrizioneClasse,
    Notifica,
    Paziente,
    PushToken,
    StatoAppuntamento,
    StatoClasse,
    StatoIscrizione,
    TipoNotifica,
)
from healing_forest.regole import PROMEMORIA_APPUNTAMENTO_ORE, PROMEMORIA_CLASSE_ORE, in_orario_silenzioso

logger = logging.getLogger(__name__)


# =========================
# Notifiche in-app
# =========================
def _notifica(
    s: Session,
    tipo: TipoNotifica,
    messaggio: str,
    paziente_id: str | None = None,
    titolo: str = "",
    appuntamento_id: str | None = None,
    classe_id: str | None = None,
) -> Notifica:
    n = Notifica(
        tipo=tipo,
        titolo=titolo,
        messaggio=messaggio,
        paziente_id=paziente_id,
        appuntamento_id=appuntamento_id,
        classe_id=classe_id,
    )
    s.add(n)
    return n


def crea_notifica(
    tipo: TipoNotifica,
    messaggio: str,
    paziente_id: str | None = None,
    titolo: str = "",
    appuntamento_id: str | None = None,
) -> int:
    with db_session() as s:
        n = _notifica(s, tipo, messaggio, paziente_id=paziente_id, titolo=titolo, appuntamento_id=appuntamento_id)
        s.flush()
        return n.id


def estrai_notifiche_pendenti(limit: int = 50) -> list[Notifica]:
    """Ritorna notifiche non ancora 'inviate' (inviata_il è NULL)."""
    with db_session() as s:
        q = select(Notifica).where(Notifica.inviata_il.is_(None)).order_by(Notifica.creata_il.asc()).limit(limit)
        return list(s.scalars(q))


def _notifica_dict(n: Notifica, paziente: Paziente | None = None) -> dict:
    return {
        "id": n.id,
        "tipo": n.tipo.value,
        "titolo": n.titolo,
        "messaggio": n.messaggio,
        "paziente_id": n.paziente_id,
        "paziente": paziente.nome_completo if paziente else None,
        "creata_il": n.creata_il.isoformat(),
        "inviata_il": n.inviata_il.isoformat() if n.inviata_il else None,
        "letta_il": n.letta_il.isoformat() if n.letta_il else None,
        "appuntamento_id": n.appuntamento_id,
        "classe_id": n.classe_id,
    }


def notifiche_pendenti_flat(limit: int = 200) -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(Notifica, Paziente)
            .join(Paziente, Paziente.id == Notifica.paziente_id, isouter=True)
            .where(Notifica.inviata_il.is_(None))
            .order_by(Notifica.creata_il.asc(), Notifica.id.asc())
            .limit(limit)
        ).all()
        return [_notifica_dict(n, p) for n, p in rows]


def notifiche_paziente(paziente_id: str, solo_non_lette: bool = False, limit: int = 100) -> list[dict]:
    with db_session() as s:
        q = select(Notifica).where(Notifica.paziente_id == paziente_id)
        if solo_non_lette:
            q = q.where(Notifica.letta_il.is_(None))
        q = q.order_by(Notifica.creata_il.desc(), Notifica.id.desc()).limit(limit)
        return [_notifica_dict(n) for n in s.scalars(q)]


def conta_non_lette(paziente_id: str) -> int:
    return len(notifiche_paziente(paziente_id, solo_non_lette=True, limit=1000))


def marca_notifica_inviata(notifica_id: int) -> bool:
    with db_session() as s:
        n = s.get(Notifica, notifica_id)
        if not n or n.inviata_il is not None:
            return False
        n.inviata_il = datetime.now()
        return True


def marca_notifica_letta(notifica_id: int, paziente_id: str | None = None) -> bool:
    with db_session() as s:
        n = s.get(Notifica, notifica_id)
        if not n or (paziente_id and n.paziente_id != paziente_id):
            return False
        if n.letta_il is None:
            n.letta_il = datetime.now()
        return True


# =========================
# Push (Expo)
# =========================
def registra_push_token(paziente_id: str, token: str, piattaforma: str | None = None) -> int:
    token = (token or "").strip()
    if not token:
        raise RegolaViolata("Token push non valido.")

    with db_session() as s:
        if not s.get(Paziente, paziente_id):
            raise NonTrovato("Paziente non trovato.")

        pt = s.execute(select(PushToken).where(PushToken.token == token)).scalar_one_or_none()
        if pt:
            # stesso dispositivo passato a un altro account
            pt.paziente_id = paziente_id
            pt.piattaforma = piattaforma or pt.piattaforma
        else:
            pt = PushToken(paziente_id=paziente_id, token=token, piattaforma=piattaforma)
            s.add(pt)
        s.flush()
        return pt.id


def rimuovi_push_token(token: str, paziente_id: str | None = None) -> bool:
    """Rimuove il dispositivo; con paziente_id solo se il token appartiene a quel paziente."""
    with db_session() as s:
        q = select(PushToken).where(PushToken.token == token)
        if paziente_id:
            q = q.where(PushToken.paziente_id == paziente_id)
        pt = s.execute(q).scalar_one_or_none()
        if not pt:
            return False
        s.delete(pt)
        return True


def _tokens(s: Session, paziente_id: str) -> list[str]:
    return list(s.scalars(select(PushToken.token).where(PushToken.paziente_id == paziente_id)))


def invia_push(
    tokens: list[str],
    titolo: str,
    corpo: str,
    dati: dict[str, Any] | None = None,
    categoria: str = "default",
) -> dict[str, Any]:
    """POST verso il servizio push esterno. Solleva requests.RequestException in caso di errore."""
    if not tokens:
        return {"data": []}

    messages = [
        {
            "to": t,
            "sound": "default",
            "title": titolo,
            "body": corpo,
            "data": dati or {},
            "categoryId": categoria,
            "priority": "high",
            "channelId": "default",
        }
        for t in tokens
    ]
    r = requests.post(
        EXPO_PUSH_URL,
        json=messages,
        headers={"Accept": "application/json", "Content-Type": "application/json"},
        timeout=PUSH_TIMEOUT_SECONDS,
    )
    r.raise_for_status()
    logger.info("Push inviata a %d dispositivi (%s)", len(tokens), categoria)
    return r.json()


@dataclass(frozen=True)
class InvioPush:
    notifica_id: int
    tokens: list[str]
    titolo: str
    messaggio: str
    categoria: str
    dati: dict[str, Any] | None = None


def _prepara_invio(
    s: Session, n: Notifica, adesso: datetime, dati: dict[str, Any] | None = None
) -> InvioPush | None:
    """
    Raccoglie quanto serve per la push di una notifica già salvata (flush fatto).
    None se il paziente non ha dispositivi o se siamo in orario silenzioso: la notifica resta pendente.
    """
    if not n.paziente_id or in_orario_silenzioso(adesso):
        return None
    tokens = _tokens(s, n.paziente_id)
    if not tokens:
        return None
    return InvioPush(n.id, tokens, n.titolo or n.tipo.value, n.messaggio, n.tipo.value.lower(), dati)


def _consegna(invii: list[InvioPush], adesso: datetime) -> int:
    """
    Invia le push a transazione chiusa e marca inviate, in una sessione breve, le notifiche consegnate.
    Se l'invio fallisce la notifica resta pendente. Ritorna il numero di notifiche consegnate.
    """
    consegnate: list[int] = []
    for inv in invii:
        try:
            invia_push(inv.tokens, inv.titolo, inv.messaggio, dati=inv.dati, categoria=inv.categoria)
        except requests.RequestException as e:
            logger.warning("Invio push fallito per notifica %s: %s", inv.notifica_id, e)
            continue
        consegnate.append(inv.notifica_id)

    if consegnate:
        with db_session() as s:
            s.execute(
                update(Notifica)
                .where(Notifica.id.in_(consegnate), Notifica.inviata_il.is_(None))
                .values(inviata_il=adesso)
            )
    return len(consegnate)


def invia_notifica_paziente(
    paziente_id: str,
    titolo: str,
    messaggio: str,
    tipo: TipoNotifica = TipoNotifica.GENERALE,
    dati: dict[str, Any] | None = None,
    adesso: datetime | None = None,
) -> dict[str, Any]:
    """Crea la notifica in-app e la invia via push se possibile."""
    adesso = adesso or datetime.now()
    with db_session() as s:
        if not s.get(Paziente, paziente_id):
            raise NonTrovato("Paziente non trovato.")
        n = _notifica(s, tipo, messaggio, paziente_id=paziente_id, titolo=titolo)
        s.flush()
        notifica_id = n.id
        invio = _prepara_invio(s, n, adesso, dati=dati)

    inviata = _consegna([invio], adesso) > 0 if invio else False
    return {"notifica_id": notifica_id, "inviata": inviata}


def invia_push_pendenti(adesso: datetime | None = None, limit: int = 200) -> int:
    """Consegna le notifiche rimaste pendenti (es. trattenute in orario silenzioso). Ritorna quante ne ha inviate."""
    adesso = adesso or datetime.now()
    if in_orario_silenzioso(adesso):
        return 0

    with db_session() as s:
        pendenti = s.scalars(
            select(Notifica)
            .where(Notifica.inviata_il.is_(None), Notifica.paziente_id.is_not(None))
            .order_by(Notifica.creata_il.asc(), Notifica.id.asc())
            .limit(limit)
        ).all()
        invii = [inv for inv in (_prepara_invio(s, n, adesso) for n in pendenti) if inv]

    return _consegna(invii, adesso)


# =========================
# Promemoria (job periodico)
# =========================
@dataclass
class EsitoPromemoria:
    appuntamenti_24h: int = 0
    appuntamenti_2h: int = 0
    classi: int = 0
    push_inviate: int = 0


def _appuntamenti_da_ricordare(s: Session, adesso: datetime, ore: int, colonna) -> list[Appuntamento]:
    q = select(Appuntamento).where(
        and_(
            Appuntamento.stato == StatoAppuntamento.CONFERMATO,
            Appuntamento.inizio >= adesso,
            Appuntamento.inizio <= adesso + timedelta(hours=ore),
            colonna.is_(None),
        )
    )
    return list(s.scalars(q))


def scansiona_promemoria(adesso: datetime | None = None) -> EsitoPromemoria:
    """
    Cerca appuntamenti e classi imminenti e genera i promemoria:
    - appuntamenti confermati entro 2h e entro 24h (una volta per finestra)
    - classi entro 2h per gli iscritti (una volta per iscritto)
    Le push partono dopo il commit, fuori dalla transazione.
    """
    adesso = adesso or datetime.now()
    ore_lungo, ore_breve = PROMEMORIA_APPUNTAMENTO_ORE
    esito = EsitoPromemoria()
    invii: list[InvioPush | None] = []

    with db_session() as s:
        # prima la finestra breve: chi la riceve non riceve anche quella lunga
        for app in _appuntamenti_da_ricordare(s, adesso, ore_breve, Appuntamento.promemoria_2h_il):
            n = _notifica(
                s, TipoNotifica.PROMEMORIA,
                f"Il tuo appuntamento è alle {app.inizio:%H:%M} (tra meno di {ore_breve} ore).",
                paziente_id=app.paziente_id, titolo="Il tuo appuntamento è a breve", appuntamento_id=app.id,
            )
            s.flush()
            invii.append(_prepara_invio(s, n, adesso, {"type": "appointment_reminder", "appointmentId": app.id}))
            app.promemoria_2h_il = adesso
            app.promemoria_24h_il = app.promemoria_24h_il or adesso
            esito.appuntamenti_2h += 1
        s.flush()

        for app in _appuntamenti_da_ricordare(s, adesso, ore_lungo, Appuntamento.promemoria_24h_il):
            n = _notifica(
                s, TipoNotifica.PROMEMORIA,
                f"Promemoria: appuntamento il {app.inizio:%d/%m/%Y} alle {app.inizio:%H:%M}.",
                paziente_id=app.paziente_id, titolo="Promemoria appuntamento", appuntamento_id=app.id,
            )
            s.flush()
            invii.append(_prepara_invio(s, n, adesso, {"type": "appointment_reminder", "appointmentId": app.id}))
            app.promemoria_24h_il = adesso
            esito.appuntamenti_24h += 1

        classi = s.scalars(
            select(ClasseBreatheMove).where(
                and_(
                    ClasseBreatheMove.stato == StatoClasse.PROGRAMMATA,
                    ClasseBreatheMove.inizio >= adesso,
                    ClasseBreatheMove.inizio <= adesso + timedelta(hours=PROMEMORIA_CLASSE_ORE),
                )
            )
        ).all()
        for classe in classi:
            gia_avvisati = set(
                s.scalars(
                    select(Notifica.paziente_id).where(
                        Notifica.classe_id == classe.id, Notifica.tipo == TipoNotifica.PROMEMORIA_CLASSE
                    )
                )
            )
            iscritti = s.scalars(
                select(IscrizioneClasse.paziente_id).where(
                    IscrizioneClasse.classe_id == classe.id, IscrizioneClasse.stato == StatoIscrizione.ISCRITTO
                )
            ).all()
            for paziente_id in iscritti:
                if paziente_id in gia_avvisati:
                    continue
                n = _notifica(
                    s, TipoNotifica.PROMEMORIA_CLASSE,
                    f"La tua classe {classe.nome} inizia alle {classe.inizio:%H:%M}.",
                    paziente_id=paziente_id, titolo="Promemoria classe", classe_id=classe.id,
                )
                s.flush()
                invii.append(_prepara_invio(s, n, adesso, {"type": "class_reminder", "classId": classe.id}))
                esito.classi += 1

    esito.push_inviate = _consegna([inv for inv in invii if inv], adesso)
    logger.info(
        "Promemoria: %d app. 24h, %d app. 2h, %d classi, %d push",
        esito.appuntamenti_24h, esito.appuntamenti_2h, esito.classi, esito.push_inviate,
    )
    return esito
