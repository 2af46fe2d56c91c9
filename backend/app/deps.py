from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, set_clinic_context
from datetime import datetime, timezone
from typing import Optional


# Sessions are issued by the host clinic application; this module only reads them.
SESSION_COOKIE_NAME = "clinic_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id AS session_id, user_id, email, expires_at, is_active, active_clinic_id
                FROM auth_sessions
                WHERE token = %s
                """,
                (token,),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "active_clinic_id": row["active_clinic_id"],
                "token": token,
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}


def get_clinic_id(
    x_clinic_id: Optional[str] = Header(None, alias="X-Clinic-Id"),
    session=Depends(get_session),
) -> str:
    if x_clinic_id:
        return x_clinic_id
    if session.get("active_clinic_id"):
        return str(session["active_clinic_id"])
    raise HTTPException(status_code=400, detail="missing clinic id")


def require_permission(code: str):
    def _dep(clinic_id: str = Depends(get_clinic_id), user=Depends(get_current_user)):
        with get_conn() as conn:
            set_clinic_context(conn, clinic_id)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1
                    FROM user_clinic_permissions
                    WHERE user_id = %s AND clinic_id = %s AND permission_code = %s
                    LIMIT 1
                    """,
                    (user["user_id"], clinic_id, code),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep
