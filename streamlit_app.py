from __future__ import annotations

import base64
import json
import os
from datetime import date, datetime, time, timedelta, timezone

import requests
import streamlit as st

st.set_page_config(page_title="Healing Forest", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")


# JWT helpers (solo per UI, senza verifica firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    try:
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    if not isinstance(exp, int):
        return False
    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp - 5)


def jwt_username(token: str) -> str:
    p = jwt_payload(token)
    return str(p.get("username") or p.get("sub") or "utente")


# HTTP client (con JWT)

class ErroreApi(Exception):
    pass


def _check(r: requests.Response) -> dict | list:
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (token non valido/scaduto oppure backend riavviato).")
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail")
        except ValueError:
            detail = r.text
        raise ErroreApi(detail or f"Errore HTTP {r.status_code}")
    return r.json()


def _headers(token: str | None) -> dict:
    return {"Authorization": f"Bearer {token}"} if token else {}


def api_get(path: str, token: str | None = None, params: dict | None = None) -> dict | list:
    return _check(requests.get(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10))


def api_post(path: str, payload: dict | None = None, token: str | None = None, params: dict | None = None) -> dict:
    return _check(
        requests.post(f"{API_BASE}{path}", headers=_headers(token), json=payload or {}, params=params, timeout=10)
    )


def api_patch(path: str, payload: dict, token: str | None = None) -> dict:
    return _check(requests.patch(f"{API_BASE}{path}", headers=_headers(token), json=payload, timeout=10))


def api_login(username: str, password: str) -> str:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(
        f"{API_BASE}/api/auth/login",
        data={"username": username, "password": password},
        timeout=10,
    )
    r.raise_for_status()
    return r.json()["access_token"]


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str)


def do_logout() -> None:
    st.session_state.pop("token", None)
    st.session_state.pop("auth_error", None)
    st.rerun()


def require_auth() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Sezione riservata. Effettua il login dalla sidebar.")
        return None
    if jwt_is_expired(token):
        st.error("Sessione scaduta. Effettua Logout dalla sidebar e rifai login.")
        return None
    return token


def mostra_errore(e: Exception) -> None:
    if isinstance(e, PermissionError):
        st.session_state["auth_error"] = str(e)
        st.error("Sessione non valida. Premi Logout e rifai login.")
    else:
        st.error(str(e))


def money(v: float | str) -> str:
    return f"$ {float(v):,.0f}".replace(",", ".")


# Sidebar login

with st.sidebar:
    st.header("Accesso staff")

    token = st.session_state.get("token")

    if not is_logged_in():
        u = st.text_input("Username", key="login_user")
        p = st.text_input("Password", type="password", key="login_pass")

        if st.button("Login", key="login_btn"):
            try:
                st.session_state["token"] = api_login(u.strip().lower(), p)
                st.session_state.pop("auth_error", None)
                st.rerun()
            except requests.HTTPError:
                st.error("Credenziali non valide.")
            except requests.RequestException as e:
                st.error(str(e))
    else:
        st.write(f"Utente: **{jwt_username(token)}**")
        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])
        if st.button("Logout", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")


# UI

st.title("Healing Forest - Dashboard")

tabs = st.tabs(["Dashboard", "Prenotazioni", "Agenda", "Pazienti", "Classi", "Pagamenti", "Crediti", "Notifiche"])


# Dati base (pubblici)

@st.cache_data(ttl=10)
def load_professionisti() -> list[dict]:
    return api_get("/api/professionisti")


@st.cache_data(ttl=10)
def load_servizi() -> list[dict]:
    return api_get("/api/servizi")


@st.cache_data(ttl=10)
def load_sotto_servizi(servizio_id: int) -> list[dict]:
    return api_get(f"/api/servizi/{servizio_id}/sotto-servizi")


@st.cache_data(ttl=10)
def load_spazi() -> list[dict]:
    return api_get("/api/spazi")


# TAB - Dashboard

with tabs[0]:
    token = require_auth()
    if token:
        try:
            k = api_get("/api/admin/dashboard", token=token)
            c1, c2, c3, c4 = st.columns(4)
            c1.metric("Pazienti attivi", k["pazienti_attivi"])
            c2.metric("Appuntamenti oggi", k["appuntamenti_oggi"])
            c3.metric("Incasso del mese", money(k["incasso_mese"]))
            c4.metric("Crediti attivi", money(k["crediti_attivi"]))
            c5, c6 = st.columns(2)
            c5.metric("Pagamenti pendenti", f"{k['pagamenti_pendenti']} ({money(k['importo_pendente'])})")
            c6.metric("Occupazione classi 7gg", f"{k['occupazione_classi_7gg']}%")

            st.subheader("Incassi per mese")
            incassi = api_get("/api/admin/report/incassi", token=token)
            st.bar_chart({r["mese"]: r["incasso"] for r in incassi})

            st.subheader("Appuntamenti di oggi")
            oggi = api_get("/api/admin/appuntamenti/oggi", token=token)
            if not oggi:
                st.info("Nessun appuntamento oggi.")
            for a in oggi:
                st.write(f"- **{a['inizio'][11:16]}** {a['paziente']} | {a['sotto_servizio'] or a['servizio']} | "
                         f"{a['professionista']} | {a['stato']}")
        except (PermissionError, ErroreApi, requests.RequestException) as e:
            mostra_errore(e)


# TAB - Prenotazioni

with tabs[1]:
    st.subheader("Prenota appuntamento")
    token = require_auth()
    if token:
        try:
            professionisti = load_professionisti()
            servizi = load_servizi()
            spazi = load_spazi()
            pazienti = api_get("/api/admin/pazienti", token=token)
        except (PermissionError, ErroreApi, requests.RequestException) as e:
            mostra_errore(e)
            st.stop()

        colA, colB, colC = st.columns(3)
        with colA:
            paziente = st.selectbox(
                "Paziente", options=pazienti,
                format_func=lambda p: f"{p['cognome']} {p['nome']} ({p.get('email') or '-'})", key="pren_paziente",
            )
            prof = st.selectbox(
                "Professionista", options=professionisti,
                format_func=lambda m: f"{m['cognome']} {m['nome']} ({m['specializzazione']})", key="pren_prof",
            )
        with colB:
            servizio = st.selectbox("Servizio", options=servizi, format_func=lambda s: s["nome"], key="pren_serv")
            sotto = load_sotto_servizi(servizio["id"]) if servizio else []
            sotto_servizio = st.selectbox(
                "Trattamento", options=[None] + sotto,
                format_func=lambda s: "-" if s is None else f"{s['nome']} ({s['durata_minuti']} min, {money(s['prezzo'])})",
                key="pren_sotto",
            )
            spazio = st.selectbox(
                "Spazio", options=[None] + spazi, format_func=lambda s: "-" if s is None else s["nome"], key="pren_spazio"
            )
        with colC:
            giorno = st.date_input("Data", value=date.today() + timedelta(days=1), key="pren_data")
            ora = st.time_input("Ora", value=time(10, 0), step=timedelta(minutes=30), key="pren_ora")
            crediti_da_usare = st.number_input("Crediti da usare", min_value=0, step=10000, key="pren_crediti")
            note = st.text_area("Note (opzionale)", height=80, key="pren_note")

        if prof and servizio and st.button("Orari liberi", key="pren_slot"):
            try:
                slot = api_get("/api/disponibilita", params={
                    "professionista_id": prof["id"], "giorno": giorno.isoformat(), "servizio_id": servizio["id"],
                    **({"sotto_servizio_id": sotto_servizio["id"]} if sotto_servizio else {}),
                    **({"spazio_id": spazio["id"]} if spazio else {}),
                })
                st.write(", ".join(slot) if slot else "Nessun orario libero.")
            except (ErroreApi, requests.RequestException) as e:
                mostra_errore(e)

        if st.button("Conferma prenotazione", key="pren_submit", disabled=not (pazienti and prof and servizio)):
            payload = {
                "paziente_id": paziente["id"],
                "professionista_id": prof["id"],
                "servizio_id": servizio["id"],
                "sotto_servizio_id": sotto_servizio["id"] if sotto_servizio else None,
                "spazio_id": spazio["id"] if spazio else None,
                "inizio": datetime.combine(giorno, ora).isoformat(),
                "note": note or None,
                "usa_crediti": crediti_da_usare or None,
            }
            try:
                res = api_post("/api/admin/appuntamenti", payload, token=token)
                st.success(f"{res['messaggio']} (ID: {res['appuntamento_id']})")
            except (PermissionError, ErroreApi, requests.RequestException) as e:
                mostra_errore(e)

        st.divider()
        st.subheader("Annulla appuntamento")
        app_id = st.text_input("ID appuntamento", key="ann_id")
        motivo = st.text_input("Motivo", key="ann_motivo")
        if st.button("Annulla", key="ann_submit", disabled=not app_id):
            try:
                res = api_post(f"/api/admin/appuntamenti/{app_id.strip()}/annulla", {"motivo": motivo or None}, token=token)
                st.success(f"Annullato. {res['messaggio']} Credito: {money(res['importo_credito'])}")
            except (PermissionError, ErroreApi, requests.RequestException) as e:
                mostra_errore(e)


# TAB - Agenda

with tabs[2]:
    st.subheader("Agenda giornaliera")
    token = require_auth()
    if token:
        professionisti = load_professionisti()
        prof_agenda = st.selectbox(
            "Professionista", options=professionisti,
            format_func=lambda m: f"{m['cognome']} {m['nome']} ({m['specializzazione']})", key="agenda_prof",
        )
        giorno = st.date_input("Giorno", value=date.today(), key="agenda_giorno")
        if prof_agenda:
            try:
                items = api_get(
                    "/api/admin/agenda", token=token,
                    params={"professionista_id": prof_agenda["id"], "giorno": giorno.isoformat()},
                )
                if not items:
                    st.info("Nessun appuntamento per questo giorno.")
                for a in items:
                    st.write(
                        f"- **{a['inizio'][11:16]} - {a['fine'][11:16]}** | {a['paziente']} | "
                        f"{a['sotto_servizio'] or a['servizio']} | Spazio: {a['spazio'] or '-'} | "
                        f"{a['stato']} / {a['stato_pagamento']} | Note: {a['note'] or '-'}"
                    )
            except (PermissionError, ErroreApi, requests.RequestException) as e:
                mostra_errore(e)


# TAB - Pazienti

with tabs[3]:
    st.subheader("Gestione pazienti")
    token = require_auth()
    if token:
        with st.expander("Crea nuovo paziente"):
            c1, c2 = st.columns(2)
            nome = c1.text_input("Nome", key="paz_nome")
            cognome = c2.text_input("Cognome", key="paz_cognome")
            email = st.text_input("Email (opzionale)", key="paz_email")
            tel = st.text_input("Telefono (opzionale)", key="paz_tel")

            if st.button("Crea paziente", key="paz_submit"):
                try:
                    res = api_post(
                        "/api/admin/pazienti",
                        {"nome": nome.strip(), "cognome": cognome.strip(),
                         "email": email.strip() or None, "telefono": tel.strip() or None},
                        token=token,
                    )
                    st.success(f"Paziente creato: {res.get('paziente_id')}")
                except (PermissionError, ErroreApi, requests.RequestException) as e:
                    mostra_errore(e)

        cerca = st.text_input("Cerca (nome, cognome, email)", key="paz_cerca")
        try:
            pazienti = api_get("/api/admin/pazienti", token=token, params={"cerca": cerca or None})
            if not pazienti:
                st.info("Nessun paziente trovato.")
            for p in pazienti:
                st.write(f"- {p['cognome']} {p['nome']} | {p.get('email') or '-'} | {p.get('telefono') or '-'} | "
                         f"crediti {money(p['saldo_crediti'])}")
        except (PermissionError, ErroreApi, requests.RequestException) as e:
            mostra_errore(e)


# TAB - Classi

with tabs[4]:
    st.subheader("Classi Breathe & Move")
    token = require_auth()
    if token:
        c1, c2 = st.columns(2)
        dal = c1.date_input("Dal", value=date.today(), key="cls_dal")
        al = c2.date_input("Al", value=date.today() + timedelta(days=7), key="cls_al")

        if st.button("Genera calendario (14 giorni)", key="cls_genera"):
            try:
                res = api_post("/api/admin/classi/genera", token=token, params={"giorni": 14})
                st.success(f"Classi create: {res['create']}")
            except (PermissionError, ErroreApi, requests.RequestException) as e:
                mostra_errore(e)

        try:
            occ = api_get("/api/admin/report/classi", token=token, params={"dal": dal.isoformat(), "al": al.isoformat()})
            st.caption(f"{occ['classi']} classi, {occ['iscritti']}/{occ['posti']} posti ({occ['occupazione_pct']}%)")
            for c in api_get("/api/classi", params={"dal": dal.isoformat(), "al": al.isoformat()}):
                st.write(f"- **{c['inizio'][:16].replace('T', ' ')}** {c['nome']} con {c['istruttore']} "
                         f"({c['intensita']}) | {c['iscritti']}/{c['max_capienza']}")
        except (PermissionError, ErroreApi, requests.RequestException) as e:
            mostra_errore(e)


# TAB - Pagamenti

with tabs[5]:
    st.subheader("Pagamenti")
    token = require_auth()
    if token:
        stato = st.selectbox("Stato", options=[None, "PENDENTE", "COMPLETATO", "FALLITO", "RIMBORSATO"], key="pag_stato")
        try:
            stats = api_get("/api/admin/pagamenti/statistiche", token=token)
            c1, c2, c3 = st.columns(3)
            c1.metric("Incassato", money(stats["totale_incassato"]), f"{stats['n_completati']} pagamenti")
            c2.metric("Pendente", money(stats["totale_pendente"]), f"{stats['n_pendenti']} pagamenti")
            c3.metric("Rimborsato", money(stats["totale_rimborsato"]), f"{stats['n_rimborsati']} pagamenti")

            for pg in api_get("/api/admin/pagamenti", token=token, params={"stato": stato} if stato else None):
                col1, col2 = st.columns([5, 1])
                col1.write(f"- {pg['creato_il'][:16].replace('T', ' ')} | {pg['paziente']} | {money(pg['importo'])} | "
                           f"{pg['metodo']} | **{pg['stato']}** | {pg['descrizione'] or ''}")
                if pg["stato"] == "PENDENTE" and col2.button("Completa", key=f"pag_ok_{pg['id']}"):
                    api_post(f"/api/admin/pagamenti/{pg['id']}/completa", {}, token=token)
                    st.rerun()
                if pg["stato"] == "COMPLETATO" and col2.button("Rimborso credito", key=f"pag_rb_{pg['id']}"):
                    api_post(f"/api/admin/pagamenti/{pg['id']}/rimborso", {"come_credito": True}, token=token)
                    st.rerun()
        except (PermissionError, ErroreApi, requests.RequestException) as e:
            mostra_errore(e)


# TAB - Crediti

with tabs[6]:
    st.subheader("Crediti pazienti")
    token = require_auth()
    if token:
        with st.expander("Credito manuale"):
            try:
                pazienti = api_get("/api/admin/pazienti", token=token)
            except (PermissionError, ErroreApi, requests.RequestException) as e:
                mostra_errore(e)
                pazienti = []
            paz = st.selectbox("Paziente", options=pazienti,
                               format_func=lambda p: f"{p['cognome']} {p['nome']}", key="cr_paz")
            importo = st.number_input("Importo", min_value=0, step=10000, key="cr_importo")
            motivo = st.text_input("Motivo", key="cr_motivo")
            if st.button("Accredita", key="cr_submit", disabled=not (paz and importo and motivo)):
                try:
                    api_post("/api/admin/crediti",
                             {"paziente_id": paz["id"], "importo": importo, "motivo": motivo}, token=token)
                    st.success("Credito accreditato.")
                except (PermissionError, ErroreApi, requests.RequestException) as e:
                    mostra_errore(e)

        try:
            verifica = api_get("/api/admin/crediti/verifica", token=token)
            if verifica["ok"]:
                st.caption("Ledger coerente.")
            else:
                st.error(f"Saldi incoerenti per {len(verifica['incoerenze'])} pazienti.")
            for r in api_get("/api/admin/crediti", token=token, params={"solo_con_saldo": True}):
                st.write(f"- {r['nome_completo']} | saldo **{money(r['saldo'])}** | accreditato {money(r['totale_accreditato'])} | "
                         f"usato {money(r['totale_usato'])} | scaduto {money(r['totale_scaduto'])}")
        except (PermissionError, ErroreApi, requests.RequestException) as e:
            mostra_errore(e)


# TAB - Notifiche

with tabs[7]:
    st.subheader("Notifiche pendenti")
    token = require_auth()
    if token:
        if st.button("Scansiona promemoria", key="not_scan"):
            try:
                e = api_post("/api/admin/promemoria/scansiona", token=token)
                st.success(f"Promemoria: {e['appuntamenti_24h']} (24h), {e['appuntamenti_2h']} (2h), "
                           f"{e['classi']} classi, {e['push_inviate']} push")
            except (PermissionError, ErroreApi, requests.RequestException) as e:
                mostra_errore(e)
        try:
            pendenti = api_get("/api/notifiche/pendenti", token=token, params={"limit": 200})
            if not pendenti:
                st.info("Nessuna notifica pendente.")
            for n in pendenti:
                st.write(f"[{n['id']}] **{n['tipo']}** | Paziente: **{n.get('paziente') or '-'}** - {n['messaggio']}")
        except (PermissionError, ErroreApi, requests.RequestException) as e:
            mostra_errore(e)
