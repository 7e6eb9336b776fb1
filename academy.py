"""
Academy data access for a signed-in staff member.

An `AcademySession` is opened the first time a signed-in member's token is
used and closed when they sign out or go idle. It subscribes to the users,
classes and the member's own to-do document, keeps typed caches of the
latest snapshots, and exposes the mutations staff perform. Mutations never
touch the caches directly: they write whole arrays back to the store and the
caches catch up from the subscription callbacks.

Class writes are conditional on the cached document version, so two staff
editing the same class cannot silently overwrite each other.
"""
import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaError

from auth import (
    ACCESS_TOKEN_EXPIRE_MINUTES, SIGNED_OUT, AuthSession, IdentityProvider, normalize_email, session_id_of,
)
from database import DocumentStore
from errors import AuthError, DuplicateRecordError, NotFoundError, ValidationError
from progress import classes_on, date_key, teacher_name
from schemas import (
    AcademyClass, AttendanceStatus, AttendanceSummary, ClassRecord, Role, Student, TodoDocument, User,
)
from seed import seed_demo_data

logger = logging.getLogger(__name__)

USERS = "users"
CLASSES = "classes"
TODOS = "todos"

SESSION_IDLE_SECONDS = float(os.getenv("SESSION_IDLE_MINUTES", ACCESS_TOKEN_EXPIRE_MINUTES)) * 60
SESSION_CACHE_SIZE = int(os.getenv("SESSION_CACHE_SIZE", 200))


# Rules shared by the session and the HTTP layer

def role_for_new_account(store: DocumentStore) -> Role:
    """The first account in an empty academy runs it."""
    if store.is_empty(USERS) and store.is_empty(CLASSES):
        return "director"
    return "teacher"


def visible_classes(user: Optional[User], classes: Iterable[AcademyClass]) -> List[AcademyClass]:
    if user is None:
        return []
    if user.role == "director":
        return list(classes)
    return [c for c in classes if c.teacher_id == user.id]


def can_manage(user: Optional[User], cls: AcademyClass) -> bool:
    if user is None:
        return False
    return user.role == "director" or cls.teacher_id == user.id


def summarize_attendance(cls: AcademyClass) -> AttendanceSummary:
    summary = AttendanceSummary(class_id=cls.id, class_name=cls.name, time=cls.time)
    for student in cls.students:
        if student.attendance == AttendanceStatus.PRESENT:
            summary.present += 1
        elif student.attendance == AttendanceStatus.ABSENT:
            summary.absent += 1
        elif student.attendance == AttendanceStatus.LATE:
            summary.late += 1
    return summary


def attendance_history(classes: Iterable[AcademyClass]) -> Dict[str, List[AttendanceSummary]]:
    """Per record date, one summary per class that has a record on that date."""
    history: Dict[str, List[AttendanceSummary]] = {}
    for cls in classes:
        if not cls.records:
            continue
        summary = summarize_attendance(cls)
        for record in cls.records:
            history.setdefault(record.date, []).append(summary.model_copy())
    return history


def merge_textbooks(cls: AcademyClass, progress_textbook: Optional[str] = None, homework_textbook: Optional[str] = None) -> dict:
    """Document fields to write when a record introduces new textbook names.

    A new name is appended once and the list re-sorted; known or blank names
    produce no update for that list.
    """
    updates = {}
    if progress_textbook and progress_textbook not in cls.progress_textbooks:
        updates["progressTextbooks"] = sorted(cls.progress_textbooks + [progress_textbook])
    if homework_textbook and homework_textbook not in cls.homework_textbooks:
        updates["homeworkTextbooks"] = sorted(cls.homework_textbooks + [homework_textbook])
    return updates


def _require(value: Optional[str], message: str) -> str:
    if value is None or not str(value).strip():
        logger.warning("Rejected input: %s", message)
        raise ValidationError(message)
    return value


def _document_fields(model, fields: dict) -> dict:
    return {(model.model_fields[k].alias or k): v for k, v in fields.items()}


def _without_nulls(fields: dict, keep=()) -> dict:
    return {k: v for k, v in fields.items() if v is not None or k in keep}


def _merged(item, fields: dict):
    try:
        return type(item).model_validate({**item.model_dump(), **fields})
    except SchemaError as e:
        logger.warning("Rejected %s update: %s", type(item).__name__, e)
        raise ValidationError("입력값이 올바르지 않습니다.") from e


def _parse_all(model, docs: List[dict]) -> list:
    parsed = []
    for doc in docs:
        try:
            parsed.append(model.from_document(doc))
        except SchemaError:
            logger.exception("Skipping unreadable %s document %s", model.__name__, doc.get("_id"))
    return parsed


def _dump_students(students: Iterable[Student]) -> list:
    return [s.model_dump(mode="json", by_alias=True) for s in students]


def _dump_records(records: Iterable[ClassRecord]) -> list:
    return [r.model_dump(mode="json", by_alias=True) for r in records]


def sign_up(store: DocumentStore, identity: IdentityProvider, name: str, email: str, password: str) -> AuthSession:
    """Create an account, decide its role, and sign it in.

    The emptiness check and the account creation are not atomic: two first
    sign-ups racing each other can both become director.
    """
    if not (name or "").strip() or not (email or "").strip() or not password:
        raise ValidationError("이름, 아이디, 비밀번호를 모두 입력해주세요.")
    role = role_for_new_account(store)
    uid = identity.sign_up(email, password)
    user = User(login_id=normalize_email(email), name=name.strip(), role=role)
    store.set(USERS, uid, user.to_document())
    logger.info("Registered %s as %s", user.login_id, role)

    if role == "director":
        try:
            seed_demo_data(store, uid)
        except Exception:
            logger.exception("Error adding demo data for first director %s", uid)
    return identity.sign_in(email, password)


class AcademySession:
    def __init__(self, store: DocumentStore, identity: IdentityProvider, auth_session: AuthSession):
        self.store = store
        self.identity = identity
        self.auth = auth_session
        self.user_id = auth_session.uid

        self.current_user: Optional[User] = None
        self.users: List[User] = []
        self.classes: List[AcademyClass] = []
        self.todos: Dict[str, List[str]] = {}
        self.is_loading = True
        self.closed = False

        self._user_unsub: Optional[Callable[[], None]] = None
        self._data_unsubs: List[Callable[[], None]] = []
        self._subscribed_role: Optional[str] = None

    # Lifecycle

    def start(self) -> "AcademySession":
        self._user_unsub = self.store.subscribe_document(USERS, self.user_id, self._on_current_user)
        return self

    def close(self) -> None:
        if self._user_unsub:
            self._user_unsub()
            self._user_unsub = None
        self._close_data()
        self.current_user = None
        self.users = []
        self.classes = []
        self.todos = {}
        self.closed = True
        logger.debug("Closed academy session for %s", self.user_id)

    def _close_data(self) -> None:
        for unsubscribe in self._data_unsubs:
            unsubscribe()
        self._data_unsubs = []
        self._subscribed_role = None

    def _on_current_user(self, doc: Optional[dict]) -> None:
        # the profile can disappear while the credential still exists
        self.current_user = User.from_document(doc) if doc else None
        self.is_loading = False
        if self.current_user is None:
            self._close_data()
            self.users, self.classes, self.todos = [], [], {}
            return
        if self.current_user.role != self._subscribed_role:
            self._open_data(self.current_user)

    def _open_data(self, user: User) -> None:
        self._close_data()
        self._subscribed_role = user.role
        users_filter = None if user.role == "director" else {"_id": user.id}
        self._data_unsubs = [
            self.store.subscribe_collection(USERS, self._on_users, users_filter),
            self.store.subscribe_collection(CLASSES, self._on_classes),
            self.store.subscribe_document(TODOS, user.id, self._on_todos),
        ]

    def _on_users(self, docs: List[dict]) -> None:
        self.users = _parse_all(User, docs)

    def _on_classes(self, docs: List[dict]) -> None:
        self.classes = _parse_all(AcademyClass, docs)

    def _on_todos(self, doc: Optional[dict]) -> None:
        self.todos = TodoDocument.from_document(doc).daily_todos if doc else {}

    # Views

    @property
    def visible_classes(self) -> List[AcademyClass]:
        return visible_classes(self.current_user, self.classes)

    @property
    def attendance_history(self) -> Dict[str, List[AttendanceSummary]]:
        return attendance_history(self.classes)

    def classes_on(self, day) -> List[AcademyClass]:
        return classes_on(self.visible_classes, day)

    def teacher_name(self, teacher_id: Optional[str]) -> str:
        return teacher_name(self.users, teacher_id)

    def todos_for(self, day) -> List[str]:
        return list(self.todos.get(date_key(day), []))

    def get_class(self, class_id: str) -> AcademyClass:
        for cls in self.classes:
            if cls.id == class_id:
                return cls
        raise NotFoundError(f"class {class_id}")

    def can_manage(self, class_id: str) -> bool:
        return can_manage(self.current_user, self.get_class(class_id))

    def _write_class(self, cls: AcademyClass, fields: dict) -> None:
        self.store.update(CLASSES, cls.id, fields, expected_version=cls.version)

    # Users (director)

    def add_user(self, login_id: str, name: str, role: Role, password: Optional[str]) -> str:
        _require(login_id, "아이디를 입력해주세요.")
        _require(name, "이름을 입력해주세요.")
        _require(password, "비밀번호를 입력해주세요.")
        uid = self.identity.sign_up(login_id, password)
        user = User(login_id=normalize_email(login_id), name=name.strip(), role=role)
        self.store.set(USERS, uid, user.to_document())
        logger.info("%s added %s %s", self.user_id, role, user.login_id)
        return uid

    def update_user(self, user_id: str, fields: dict, password: Optional[str] = None) -> None:
        if password:
            raise AuthError("auth/requires-recent-login")
        if self.store.get(USERS, user_id) is None:
            raise NotFoundError(f"user {user_id}")
        fields = _without_nulls(fields)
        if "login_id" in fields:
            _require(fields["login_id"], "아이디를 입력해주세요.")
        if "name" in fields:
            _require(fields["name"], "이름을 입력해주세요.")
        patch = _document_fields(User, fields)
        if patch:
            self.store.update(USERS, user_id, patch)

    def delete_user(self, user_id: str) -> None:
        """Remove the profile and credential and unassign the user's classes.

        Nothing else referencing the user is touched.
        """
        if not self.store.delete(USERS, user_id):
            raise NotFoundError(f"user {user_id}")
        batch = self.store.batch()
        for doc in self.store.query(CLASSES, {"teacherId": user_id}):
            batch.update(CLASSES, str(doc["_id"]), {"teacherId": ""})
        unassigned = len(batch)
        batch.commit()
        self.identity.delete_credential(user_id)
        logger.info("Deleted user %s, unassigned %d classes", user_id, unassigned)

    # To-dos

    def add_todo(self, day, text: str) -> None:
        text = _require(text, "할 일을 입력해주세요.").strip()
        key = date_key(day)
        todos = dict(self.todos)
        todos[key] = todos.get(key, []) + [text]
        self.store.set(TODOS, self.user_id, {"dailyTodos": todos}, merge=True)

    def remove_todo(self, day, index: int) -> None:
        key = date_key(day)
        current = self.todos.get(key, [])
        if not 0 <= index < len(current):
            raise NotFoundError(f"todo {key}#{index}")
        todos = dict(self.todos)
        todos[key] = [t for i, t in enumerate(current) if i != index]
        self.store.set(TODOS, self.user_id, {"dailyTodos": todos}, merge=True)

    # Classes

    def add_class(self, name: str, time_label: str, teacher_id: Optional[str] = "") -> str:
        _require(name, "수업 이름을 입력해주세요.")
        _require(time_label, "수업 시간을 입력해주세요. (예: 2:50)")
        cls = AcademyClass(name=name, time=time_label, teacher_id=teacher_id or "")
        return self.store.create(CLASSES, cls.to_document())

    def update_class(self, class_id: str, fields: dict) -> None:
        cls = self.get_class(class_id)
        fields = _without_nulls(fields, keep=("teacher_id",))
        if "name" in fields:
            _require(fields["name"], "수업 이름을 입력해주세요.")
        if "time" in fields:
            _require(fields["time"], "수업 시간을 입력해주세요. (예: 2:50)")
        if fields.get("teacher_id") is None and "teacher_id" in fields:
            fields = dict(fields, teacher_id="")
        patch = _document_fields(AcademyClass, fields)
        if patch:
            self._write_class(cls, patch)

    def delete_class(self, class_id: str) -> None:
        if not self.store.delete(CLASSES, class_id):
            raise NotFoundError(f"class {class_id}")

    # Attendance

    def update_student_attendance(self, class_id: str, students: List[Student]) -> None:
        cls = self.get_class(class_id)
        self._write_class(cls, {"students": _dump_students(students)})

    def toggle_attendance(self, class_id: str, student_id: str) -> AttendanceStatus:
        cls = self.get_class(class_id)
        student = cls.find_student(student_id)
        if student is None:
            raise NotFoundError(f"student {student_id}")
        status = student.attendance.next()
        students = [s.model_copy(update={"attendance": status}) if s.id == student_id else s for s in cls.students]
        self._write_class(cls, {"students": _dump_students(students)})
        return status

    def mark_all_present(self, class_id: str) -> None:
        cls = self.get_class(class_id)
        students = [s.model_copy(update={"attendance": AttendanceStatus.PRESENT}) for s in cls.students]
        self._write_class(cls, {"students": _dump_students(students)})

    # Records

    def add_class_record(self, class_id: str, record: ClassRecord) -> None:
        cls = self.get_class(class_id)
        _require(record.date, "날짜를 입력해주세요.")
        _require(record.progress_textbook, "진도 교재명과 진도를 입력해주세요.")
        _require(record.progress_range, "진도 교재명과 진도를 입력해주세요.")
        if cls.find_record(record.date) is not None:
            logger.warning("Duplicate record %s for class %s", record.date, class_id)
            raise DuplicateRecordError(record.date)
        fields = {"records": _dump_records(cls.records + [record])}
        fields.update(merge_textbooks(cls, record.progress_textbook, record.homework_textbook))
        self._write_class(cls, fields)

    def update_class_record(self, class_id: str, record_date: str, fields: dict) -> None:
        cls = self.get_class(class_id)
        if cls.find_record(record_date) is None:
            raise NotFoundError(f"record {record_date}")
        fields = {k: v for k, v in _without_nulls(fields).items() if k != "date"}
        if "progress_textbook" in fields:
            _require(fields["progress_textbook"], "진도 교재명과 진도를 입력해주세요.")
        if "progress_range" in fields:
            _require(fields["progress_range"], "진도 교재명과 진도를 입력해주세요.")
        records = [_merged(r, fields) if r.date == record_date else r for r in cls.records]
        update = {"records": _dump_records(records)}
        update.update(merge_textbooks(cls, fields.get("progress_textbook"), fields.get("homework_textbook")))
        self._write_class(cls, update)

    def delete_class_record(self, class_id: str, record_date: str) -> None:
        cls = self.get_class(class_id)
        if cls.find_record(record_date) is None:
            raise NotFoundError(f"record {record_date}")
        records = [r for r in cls.records if r.date != record_date]
        self._write_class(cls, {"records": _dump_records(records)})

    def delete_progress_textbook(self, class_id: str, textbook: str) -> None:
        cls = self.get_class(class_id)
        self._write_class(cls, {"progressTextbooks": [t for t in cls.progress_textbooks if t != textbook]})

    def delete_homework_textbook(self, class_id: str, textbook: str) -> None:
        cls = self.get_class(class_id)
        self._write_class(cls, {"homeworkTextbooks": [t for t in cls.homework_textbooks if t != textbook]})

    # Students

    def add_student(self, class_id: str, name: str, last_attended: str) -> str:
        cls = self.get_class(class_id)
        _require(name, "학생 이름을 입력해주세요.")
        _require(last_attended, "마지막 출석일을 입력해주세요.")
        student_id = f"s{int(time.time() * 1000)}"
        taken = {s.id for s in cls.students}
        while student_id in taken:
            student_id = f"s{int(student_id[1:]) + 1}"
        student = Student(id=student_id, name=name, last_attended=last_attended)
        self._write_class(cls, {"students": _dump_students(cls.students + [student])})
        return student_id

    def update_student(self, class_id: str, student_id: str, fields: dict) -> None:
        cls = self.get_class(class_id)
        if cls.find_student(student_id) is None:
            raise NotFoundError(f"student {student_id}")
        fields = {k: v for k, v in _without_nulls(fields).items() if k in ("name", "last_attended")}
        if "name" in fields:
            _require(fields["name"], "학생 이름을 입력해주세요.")
        students = [_merged(s, fields) if s.id == student_id else s for s in cls.students]
        self._write_class(cls, {"students": _dump_students(students)})

    def delete_student(self, class_id: str, student_id: str) -> None:
        cls = self.get_class(class_id)
        if cls.find_student(student_id) is None:
            raise NotFoundError(f"student {student_id}")
        students = [s for s in cls.students if s.id != student_id]
        self._write_class(cls, {"students": _dump_students(students)})


class SessionRegistry:
    """Keeps one AcademySession per signed-in session id.

    Sessions open on first use of a token and are closed on sign-out, when a
    token for them stops verifying, after `idle_timeout` seconds without use,
    or when more than `max_sessions` are open (least recently used first).
    A closed session reopens on the next request carrying a valid token.
    """

    def __init__(self, store: DocumentStore, identity: IdentityProvider,
                 idle_timeout: float = SESSION_IDLE_SECONDS, max_sessions: int = SESSION_CACHE_SIZE,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.identity = identity
        self.idle_timeout = idle_timeout
        self.max_sessions = max(1, max_sessions)
        self._clock = clock
        self._sessions: "OrderedDict[str, AcademySession]" = OrderedDict()
        self._last_used: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._unsubscribe = identity.on_session_change(self._on_session_change)

    def _on_session_change(self, event: str, auth_session: AuthSession) -> None:
        if event == SIGNED_OUT:
            self._evict(auth_session.session_id)

    def _evict(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            self._last_used.pop(session_id, None)
        if session is not None:
            logger.debug("Released session %s", session_id)
            session.close()

    def _pop_stale(self) -> List[AcademySession]:
        # caller holds the lock
        now = self._clock()
        stale = []
        for session_id in list(self._sessions):
            if now - self._last_used[session_id] > self.idle_timeout:
                stale.append(self._sessions.pop(session_id))
                del self._last_used[session_id]
        while len(self._sessions) > self.max_sessions:
            session_id, session = self._sessions.popitem(last=False)
            del self._last_used[session_id]
            stale.append(session)
        return stale

    def for_token(self, token: str) -> AcademySession:
        try:
            auth_session = self.identity.verify_token(token)
        except AuthError:
            session_id = session_id_of(token)
            if session_id:
                self._evict(session_id)
            raise
        session_id = auth_session.session_id
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = AcademySession(self.store, self.identity, auth_session).start()
                self._sessions[session_id] = session
            else:
                self._sessions.move_to_end(session_id)
            self._last_used[session_id] = self._clock()
            stale = self._pop_stale()
        for old in stale:
            old.close()
        if stale:
            logger.info("Released %d idle sessions", len(stale))
        return session

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions = OrderedDict()
            self._last_used = {}
        for session in sessions:
            session.close()
