"""
Identity provider: credentials, sessions and access tokens.

Credentials are bcrypt hashes in the "credential" collection, keyed by uid.
Each sign-in opens a document in "session"; the JWT handed to the client
carries the uid (`sub`) and the session id (`sid`), and is only honoured
while that session is active.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from email_validator import EmailNotValidError, validate_email
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from database import DocumentStore, new_id
from errors import AuthError

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 8))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
MIN_PASSWORD_LENGTH = 6

CREDENTIALS = "credential"
SESSIONS = "session"

SIGNED_IN = "signed_in"
SIGNED_OUT = "signed_out"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


class AuthSession(BaseModel):
    uid: str
    email: str
    session_id: str
    token: str = ""


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def normalize_email(email: str) -> str:
    email = (email or "").strip()
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        raise AuthError("auth/invalid-email")
    return email.lower()


def session_id_of(token: str) -> Optional[str]:
    """The `sid` claim of a token, read without checking signature or expiry."""
    try:
        return jwt.get_unverified_claims(token).get("sid")
    except JWTError:
        return None


SessionListener = Callable[[str, AuthSession], None]


class IdentityProvider:
    def __init__(self, store: DocumentStore):
        self.store = store
        self._listeners: List[SessionListener] = []

    def on_session_change(self, callback: SessionListener):
        """Register `callback(event, session)` for SIGNED_IN / SIGNED_OUT."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def _emit(self, event: str, session: AuthSession) -> None:
        for callback in list(self._listeners):
            callback(event, session)

    def _find_credential(self, email: str) -> Optional[dict]:
        found = self.store.query(CREDENTIALS, {"email": email}, limit=1)
        return found[0] if found else None

    def sign_up(self, email: str, password: str) -> str:
        """Create a credential and return its uid. Does not sign in."""
        email = normalize_email(email)
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError("auth/weak-password")
        if self._find_credential(email):
            raise AuthError("auth/email-already-in-use")
        uid = self.store.create(CREDENTIALS, {
            "email": email,
            "hashed_password": get_password_hash(password),
            "created_at": datetime.now(timezone.utc),
        })
        logger.info("Created credential %s for %s", uid, email)
        return uid

    def sign_in(self, email: str, password: str) -> AuthSession:
        try:
            email = normalize_email(email)
        except AuthError:
            raise AuthError("auth/invalid-credential")
        credential = self._find_credential(email)
        if not credential or not verify_password(password or "", credential.get("hashed_password", "")):
            logger.info("Rejected sign-in for %s", email)
            raise AuthError("auth/invalid-credential")

        uid = str(credential["_id"])
        session_id = new_id()
        self.store.create(SESSIONS, {
            "uid": uid,
            "email": email,
            "active": True,
            "created_at": datetime.now(timezone.utc),
        }, doc_id=session_id)
        token = create_access_token({"sub": uid, "sid": session_id, "email": email})
        session = AuthSession(uid=uid, email=email, session_id=session_id, token=token)
        logger.info("Signed in %s (session %s)", email, session_id)
        self._emit(SIGNED_IN, session)
        return session

    def verify_token(self, token: str) -> AuthSession:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            raise AuthError("auth/session-expired")
        uid = payload.get("sub")
        session_id = payload.get("sid")
        if uid is None or session_id is None:
            raise AuthError("auth/session-expired")
        doc = self.store.get(SESSIONS, session_id)
        if not doc or not doc.get("active") or doc.get("uid") != uid:
            raise AuthError("auth/session-expired")
        return AuthSession(uid=uid, email=doc.get("email", ""), session_id=session_id, token=token)

    def sign_out(self, session: AuthSession) -> None:
        doc = self.store.get(SESSIONS, session.session_id)
        if not doc or not doc.get("active"):
            return
        self.store.update(SESSIONS, session.session_id, {
            "active": False,
            "ended_at": datetime.now(timezone.utc),
        })
        logger.info("Signed out session %s", session.session_id)
        self._emit(SIGNED_OUT, session)

    def delete_credential(self, uid: str) -> None:
        for doc in self.store.query(SESSIONS, {"uid": uid, "active": True}):
            self.sign_out(AuthSession(uid=uid, email=doc.get("email", ""), session_id=str(doc["_id"])))
        self.store.delete(CREDENTIALS, uid)
        logger.info("Deleted credential %s", uid)

    def change_password(self, uid: str, current_password: str, new_password: str) -> None:
        credential = self.store.get(CREDENTIALS, uid)
        if not credential or not verify_password(current_password or "", credential.get("hashed_password", "")):
            raise AuthError("auth/invalid-credential")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError("auth/weak-password")
        self.store.update(CREDENTIALS, uid, {"hashed_password": get_password_hash(new_password)})
        logger.info("Changed password for %s", uid)
