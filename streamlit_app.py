from __future__ import annotations

import base64
import json
from datetime import date, datetime, timezone

import requests
import streamlit as st

from clinica.config import API_BASE

st.set_page_config(page_title="Clinica", layout="wide")

STATUS_LABELS = {
    "scheduled": "Agendado",
    "waiting": "Aguardando",
    "in_progress": "Em atendimento",
    "completed": "Finalizado",
    "cancelled": "Cancelado",
}


# JWT helpers (solo per UI, senza verifica firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    if not isinstance(exp, (int, float)):
        return False
    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (int(exp) - 5)


def jwt_role(token: str) -> str:
    return str(jwt_payload(token).get("role") or "")


# HTTP client (con JWT)

def _headers(token: str | None) -> dict:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _check(r: requests.Response):
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (token non valido/scaduto oppure backend riavviato).")
    if r.status_code in (400, 403, 404):
        # messaggio di dominio dall'API
        raise RuntimeError(r.json().get("detail") or r.text)
    r.raise_for_status()
    return r.json()


def api_get(path: str, token: str, params: dict | None = None):
    return _check(requests.get(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10))


def api_post(path: str, payload: dict | None, token: str):
    return _check(requests.post(f"{API_BASE}{path}", headers=_headers(token), json=payload, timeout=10))


def api_login(email: str, password: str) -> str:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded, username = email
    r = requests.post(
        f"{API_BASE}/api/auth/login",
        data={"username": email, "password": password},
        timeout=10,
    )
    r.raise_for_status()
    data = r.json()
    st.session_state["user"] = data["user"]
    return data["access_token"]


def do_logout() -> None:
    for key in ("token", "user", "auth_error"):
        st.session_state.pop(key, None)
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


def show_error(e: Exception) -> None:
    if isinstance(e, PermissionError):
        st.session_state["auth_error"] = str(e)
        st.error("Sessione non valida. Premi Logout e rifai login.")
    else:
        st.error(str(e))


# Sidebar login

with st.sidebar:
    st.header("Accesso")

    if not st.session_state.get("token"):
        u = st.text_input("Email", key="login_user")
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
        user = st.session_state.get("user") or {}
        st.write(f"Utente: **{user.get('name', '-')}** ({user.get('role', '-')})")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Logout", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")


# UI

st.title("Clinica (API REST + JWT + Streamlit)")

tab1, tab2, tab3, tab4 = st.tabs(["Fila", "Agendamento", "Pazienti", "Finanziario"])


# TAB 1 - Fila del giorno

with tab1:
    st.subheader("Fila di attesa")

    token = require_auth()
    if token:
        c1, c2, c3 = st.columns(3)
        giorno = c1.date_input("Giorno", value=date.today(), key="fila_giorno")
        stato = c2.selectbox("Stato", options=["attivi", "all", *STATUS_LABELS], key="fila_stato")
        tipo = c3.selectbox("Tipo", options=["all", "consultation", "exam", "procedure"], key="fila_tipo")

        params = {"date": giorno.isoformat(), "type": tipo}
        if stato != "attivi":
            params["status"] = stato

        try:
            items = api_get("/api/queue", token, params=params)
        except Exception as e:
            show_error(e)
            items = []

        if not items:
            st.info("Nessun paziente in fila.")

        role = jwt_role(token)
        for a in items:
            col_info, col_act = st.columns([4, 2])
            procs = ", ".join(p["name"] for p in a["procedures"])
            col_info.write(
                f"**{a['scheduled_at'][11:16]}** | {a['patient_name'] or '-'} | "
                f"{STATUS_LABELS.get(a['status'], a['status'])} | {a['professional_name'] or '-'} | {procs}"
            )
            try:
                if a["status"] == "scheduled" and col_act.button("Check-in", key=f"chk_{a['id']}"):
                    api_post(f"/api/appointments/{a['id']}/check-in", None, token)
                    st.rerun()
                if a["status"] == "waiting" and role == "medico" and col_act.button("Inizia", key=f"start_{a['id']}"):
                    api_post(f"/api/appointments/{a['id']}/start", None, token)
                    st.rerun()
                if a["status"] in ("scheduled", "waiting") and col_act.button("Annulla", key=f"canc_{a['id']}"):
                    api_post(f"/api/appointments/{a['id']}/cancel", None, token)
                    st.rerun()
            except Exception as e:
                show_error(e)

            if a["status"] == "in_progress" and role == "medico":
                with st.expander(f"Concludi visita #{a['id']}"):
                    subj = st.text_area("Soggettivo", key=f"s_{a['id']}")
                    obj = st.text_area("Oggettivo", key=f"o_{a['id']}")
                    assess = st.text_area("Valutazione", key=f"a_{a['id']}")
                    plan = st.text_area("Piano", key=f"p_{a['id']}")
                    done = st.multiselect(
                        "Procedure eseguite",
                        options=a["procedures"],
                        default=a["procedures"],
                        format_func=lambda p: f"{p['name']} ({p['value']})",
                        key=f"proc_{a['id']}",
                    )
                    if st.button("Salva evoluzione e concludi", key=f"done_{a['id']}"):
                        payload = {
                            "appointment_id": a["id"],
                            "subjective": subj,
                            "objective": obj,
                            "assessment": assess,
                            "plan": plan,
                            "performed_procedure_ids": [p["id"] for p in done],
                        }
                        try:
                            res = api_post("/api/evolutions", payload, token)
                            rec = res.get("financial_record")
                            if rec:
                                st.success(f"Visita conclusa. Totale {rec['total_value']}, professionista {rec['professional_value']}")
                            else:
                                st.success("Visita conclusa.")
                        except Exception as e:
                            show_error(e)


# TAB 2 - Agendamento

with tab2:
    st.subheader("Nuovo appuntamento")

    token = require_auth()
    if token:
        try:
            professionisti = api_get("/api/professionals", token)
            procedure = api_get("/api/procedures", token)
            pazienti = api_get("/api/patients", token)
        except Exception as e:
            show_error(e)
            st.stop()

        colA, colB = st.columns(2)
        with colA:
            prof = st.selectbox(
                "Professionista",
                options=professionisti,
                format_func=lambda p: f"{(p.get('user') or {}).get('name', '-')} ({p['specialty']})",
                key="app_prof",
            )
            scelte = st.multiselect(
                "Procedure",
                options=procedure,
                format_func=lambda p: f"{p['name']} - {p['value']}",
                key="app_proc",
            )
            note = st.text_area("Note (opzionale)", height=80, key="app_note")

        with colB:
            giorno_app = st.date_input("Data", value=date.today(), key="app_data")
            ora_app = st.time_input("Ora", value=datetime.now().time().replace(second=0, microsecond=0), key="app_ora")
            pre = st.checkbox("Pre-agendamento (paziente non registrato)", key="app_pre")
            if pre:
                nome = st.text_input("Nome paziente", key="app_nome")
                tel = st.text_input("Telefono", key="app_tel")
                paziente = None
            else:
                paziente = st.selectbox(
                    "Paziente",
                    options=pazienti,
                    format_func=lambda p: f"{p['name']} | {p['phone']}",
                    key="app_paz",
                )

        if st.button("Conferma appuntamento", key="app_submit", disabled=not professionisti):
            payload = {
                "professional_id": prof["id"],
                "scheduled_at": datetime.combine(giorno_app, ora_app).isoformat(),
                "procedure_ids": [p["id"] for p in scelte],
                "notes": note or None,
            }
            if pre:
                payload.update({"patient_name": nome.strip(), "patient_phone": tel.strip() or None})
            elif paziente:
                payload["patient_id"] = paziente["id"]
            try:
                res = api_post("/api/appointments", payload, token)
                st.success(f"Appuntamento creato (ID: {res['id']})")
            except Exception as e:
                show_error(e)


# TAB 3 - Pazienti

with tab3:
    st.subheader("Gestione pazienti")

    token = require_auth()
    if token:
        with st.expander("Cadastro rapido"):
            nome_r = st.text_input("Nome", key="quick_nome")
            if st.button("Crea", key="quick_submit"):
                try:
                    res = api_post("/api/patients/quick", {"name": nome_r.strip()}, token)
                    st.success(f"Paziente creato: {res['id']} (dati da completare)")
                except Exception as e:
                    show_error(e)

        with st.expander("Crea nuovo paziente"):
            c1, c2 = st.columns(2)
            nome_p = c1.text_input("Nome", key="paz_nome")
            tel_p = c2.text_input("Telefono", key="paz_tel")
            email_p = st.text_input("Email (opzionale)", key="paz_email")
            if st.button("Crea paziente", key="paz_submit"):
                try:
                    res = api_post(
                        "/api/patients",
                        {"name": nome_p.strip(), "phone": tel_p.strip(), "email": email_p.strip() or None},
                        token,
                    )
                    st.success(f"Paziente creato: {res['id']}")
                except Exception as e:
                    show_error(e)

        st.divider()
        try:
            for p in api_get("/api/patients", token):
                flag = " *(da completare)*" if p["needs_completion"] else ""
                st.write(f"- {p['name']} | {p.get('email') or '-'} | {p['phone']}{flag}")
        except Exception as e:
            show_error(e)


# TAB 4 - Finanziario (admin / medico)

with tab4:
    st.subheader("Riepilogo finanziario")

    token = require_auth()
    if token:
        if jwt_role(token) not in ("admin", "medico"):
            st.info("Sezione disponibile solo per admin e medici.")
        else:
            c1, c2 = st.columns(2)
            dal = c1.date_input("Dal", value=date.today().replace(day=1), key="fin_dal")
            al = c2.date_input("Al", value=date.today(), key="fin_al")
            params = {"startDate": dal.isoformat(), "endDate": al.isoformat()}
            try:
                tot = api_get("/api/financial/summary", token, params=params)
                m1, m2, m3, m4 = st.columns(4)
                m1.metric("Visite", tot["records"])
                m2.metric("Totale", tot["total_value"])
                m3.metric("Clinica", tot["clinic_commission"])
                m4.metric("Professionisti", tot["professional_value"])

                st.write("Per professionista:")
                st.dataframe(api_get("/api/financial/by-professional", token, params=params), use_container_width=True)
                st.write("Per tipo di procedura:")
                st.dataframe(api_get("/api/financial/by-type", token, params=params), use_container_width=True)
            except Exception as e:
                show_error(e)
