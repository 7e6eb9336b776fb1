import logging
import os
from datetime import date
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel

import academy
from academy import AcademySession, SessionRegistry
from auth import IdentityProvider
from database import DocumentStore, db
from errors import (
    AcademyError, AuthError, BackendError, DuplicateRecordError, NotFoundError, StaleDocumentError, ValidationError,
)
from progress import available_months, filter_records, sorted_students
from schemas import (
    AcademyClass, AttendanceStatus, AttendanceSummary, AttendanceUpdate, ClassCreate, ClassRecord, ClassUpdate,
    PasswordChange, RecordUpdate, SignUpRequest, Student, StudentCreate, StudentUpdate, TodoCreate, User,
    UserCreate, UserUpdate,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Academy Manager API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

store: Optional[DocumentStore] = None
identity: Optional[IdentityProvider] = None
sessions: Optional[SessionRegistry] = None


def configure(database) -> None:
    """(Re)build the store, identity provider and session registry around `database`."""
    global store, identity, sessions
    if sessions is not None:
        sessions.close()
    store = DocumentStore(database)
    identity = IdentityProvider(store)
    sessions = SessionRegistry(store, identity)


configure(db)


# Schemas
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterResponse(Token):
    user_id: str
    role: str


class IdResponse(BaseModel):
    id: str


class Me(BaseModel):
    user: Optional[User]
    is_loading: bool


# Error mapping

def _status_for(exc: AcademyError) -> int:
    if isinstance(exc, AuthError):
        if exc.code in ("auth/invalid-credential", "auth/session-expired"):
            return status.HTTP_401_UNAUTHORIZED
        if exc.code == "auth/requires-recent-login":
            return status.HTTP_403_FORBIDDEN
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (DuplicateRecordError, StaleDocumentError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, BackendError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(AcademyError)
async def academy_error_handler(request: Request, exc: AcademyError):
    content = {"detail": exc.message}
    if isinstance(exc, AuthError):
        content["code"] = exc.code
    return JSONResponse(status_code=_status_for(exc), content=content)


# Dependencies

def get_session(token: str = Depends(oauth2_scheme)) -> AcademySession:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        session = sessions.for_token(token)
    except AuthError:
        raise credentials_exception
    if session.current_user is None:
        raise credentials_exception
    return session


def require_director(session: AcademySession = Depends(get_session)) -> AcademySession:
    if session.current_user.role != "director":
        raise HTTPException(status_code=403, detail="원장 계정만 사용할 수 있습니다.")
    return session


def managed_class(class_id: str, session: AcademySession = Depends(get_session)) -> AcademySession:
    if not session.can_manage(class_id):
        raise HTTPException(status_code=403, detail="이 수업을 관리할 권한이 없습니다.")
    return session


# Public endpoints
@app.get("/")
def read_root():
    return {"message": "Academy Manager API is running"}


@app.get("/test")
def check_database():
    """Report the database this process talks to and how many sessions it holds open."""
    return {
        "backend": "running",
        "database": store.name,
        "collections": sorted(store.list_collection_names())[:10],
        "sessions": len(sessions),
    }


# Auth routes
@app.post("/auth/register", response_model=RegisterResponse)
def register_user(payload: SignUpRequest):
    auth_session = academy.sign_up(store, identity, payload.name, payload.email, payload.password)
    session = sessions.for_token(auth_session.token)
    return {
        "user_id": auth_session.uid,
        "role": session.current_user.role if session.current_user else "teacher",
        "access_token": auth_session.token,
        "token_type": "bearer",
    }


@app.post("/auth/token", response_model=Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    # OAuth2 form uses the username field for the email
    if not form_data.username or not form_data.password:
        raise ValidationError("아이디와 비밀번호를 모두 입력해주세요.")
    auth_session = identity.sign_in(form_data.username, form_data.password)
    return {"access_token": auth_session.token, "token_type": "bearer"}


@app.post("/auth/logout")
def logout(session: AcademySession = Depends(get_session)):
    identity.sign_out(session.auth)
    return {"message": "logged out"}


@app.post("/auth/password")
def change_password(payload: PasswordChange, session: AcademySession = Depends(get_session)):
    identity.change_password(session.user_id, payload.current_password, payload.new_password)
    return {"message": "password changed"}


@app.get("/me", response_model=Me)
def read_users_me(session: AcademySession = Depends(get_session)):
    return {"user": session.current_user, "is_loading": session.is_loading}


# Users (director only)
@app.get("/users", response_model=List[User])
def list_users(session: AcademySession = Depends(get_session)):
    return session.users


@app.post("/users", response_model=IdResponse)
def create_user(payload: UserCreate, session: AcademySession = Depends(require_director)):
    uid = session.add_user(payload.login_id, payload.name, payload.role, payload.password)
    return {"id": uid}


@app.patch("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, session: AcademySession = Depends(require_director)):
    fields = {k: v for k, v in payload.model_dump(exclude_unset=True, exclude={"password"}).items() if v is not None}
    session.update_user(user_id, fields, password=payload.password)
    return {"message": "updated"}


@app.delete("/users/{user_id}")
def delete_user(user_id: str, session: AcademySession = Depends(require_director)):
    session.delete_user(user_id)
    return {"message": "deleted"}


# Classes
@app.get("/classes", response_model=List[AcademyClass])
def list_classes(session: AcademySession = Depends(get_session)):
    return session.visible_classes


@app.get("/classes/on/{day}", response_model=List[AcademyClass])
def list_classes_on(day: date, session: AcademySession = Depends(get_session)):
    return session.classes_on(day)


@app.post("/classes", response_model=IdResponse)
def create_class(payload: ClassCreate, session: AcademySession = Depends(get_session)):
    teacher_id = payload.teacher_id
    if session.current_user.role == "teacher":
        teacher_id = session.user_id
    return {"id": session.add_class(payload.name, payload.time, teacher_id)}


@app.get("/classes/{class_id}")
def read_class(class_id: str, session: AcademySession = Depends(get_session)):
    cls = session.get_class(class_id)
    if cls not in session.visible_classes:
        raise HTTPException(status_code=403, detail="이 수업을 볼 권한이 없습니다.")
    return {
        "class": cls,
        "teacherName": session.teacher_name(cls.teacher_id),
        "months": available_months(cls.records),
    }


@app.patch("/classes/{class_id}")
def update_class(class_id: str, payload: ClassUpdate, session: AcademySession = Depends(managed_class)):
    fields = payload.model_dump(exclude_unset=True)
    if session.current_user.role != "director":
        fields.pop("teacher_id", None)
    session.update_class(class_id, fields)
    return {"message": "updated"}


@app.delete("/classes/{class_id}")
def delete_class(class_id: str, session: AcademySession = Depends(managed_class)):
    session.delete_class(class_id)
    return {"message": "deleted"}


# Attendance
@app.put("/classes/{class_id}/attendance")
def save_attendance(class_id: str, payload: AttendanceUpdate, session: AcademySession = Depends(managed_class)):
    session.update_student_attendance(class_id, payload.students)
    return {"message": "saved"}


@app.post("/classes/{class_id}/attendance/present")
def mark_all_present(class_id: str, session: AcademySession = Depends(managed_class)):
    session.mark_all_present(class_id)
    return {"message": "saved"}


@app.post("/classes/{class_id}/students/{student_id}/attendance")
def toggle_attendance(class_id: str, student_id: str, session: AcademySession = Depends(managed_class)):
    new_status: AttendanceStatus = session.toggle_attendance(class_id, student_id)
    return {"attendance": new_status.value}


@app.get("/attendance/history", response_model=Dict[str, List[AttendanceSummary]])
def read_attendance_history(day: Optional[date] = None, session: AcademySession = Depends(get_session)):
    history = session.attendance_history
    if day is not None:
        key = day.isoformat()
        return {key: history.get(key, [])}
    return history


# Students
@app.get("/classes/{class_id}/students", response_model=List[Student])
def list_students(class_id: str, session: AcademySession = Depends(managed_class)):
    return sorted_students(session.get_class(class_id).students)


@app.post("/classes/{class_id}/students", response_model=IdResponse)
def add_student(class_id: str, payload: StudentCreate, session: AcademySession = Depends(managed_class)):
    return {"id": session.add_student(class_id, payload.name, payload.last_attended)}


@app.patch("/classes/{class_id}/students/{student_id}")
def update_student(class_id: str, student_id: str, payload: StudentUpdate, session: AcademySession = Depends(managed_class)):
    session.update_student(class_id, student_id, payload.model_dump(exclude_unset=True, exclude_none=True))
    return {"message": "updated"}


@app.delete("/classes/{class_id}/students/{student_id}")
def delete_student(class_id: str, student_id: str, session: AcademySession = Depends(managed_class)):
    session.delete_student(class_id, student_id)
    return {"message": "deleted"}


# Records
@app.get("/classes/{class_id}/records", response_model=List[ClassRecord])
def list_records(class_id: str, month: Optional[str] = None, week: Optional[int] = None, session: AcademySession = Depends(managed_class)):
    return filter_records(session.get_class(class_id).records, month=month, week=week)


@app.post("/classes/{class_id}/records")
def add_record(class_id: str, payload: ClassRecord, session: AcademySession = Depends(managed_class)):
    session.add_class_record(class_id, payload)
    return {"message": "created"}


@app.patch("/classes/{class_id}/records/{record_date}")
def update_record(class_id: str, record_date: str, payload: RecordUpdate, session: AcademySession = Depends(managed_class)):
    session.update_class_record(class_id, record_date, payload.model_dump(exclude_unset=True, exclude_none=True))
    return {"message": "updated"}


@app.delete("/classes/{class_id}/records/{record_date}")
def delete_record(class_id: str, record_date: str, session: AcademySession = Depends(managed_class)):
    session.delete_class_record(class_id, record_date)
    return {"message": "deleted"}


@app.delete("/classes/{class_id}/textbooks/progress/{textbook}")
def delete_progress_textbook(class_id: str, textbook: str, session: AcademySession = Depends(managed_class)):
    session.delete_progress_textbook(class_id, textbook)
    return {"message": "deleted"}


@app.delete("/classes/{class_id}/textbooks/homework/{textbook}")
def delete_homework_textbook(class_id: str, textbook: str, session: AcademySession = Depends(managed_class)):
    session.delete_homework_textbook(class_id, textbook)
    return {"message": "deleted"}


# To-dos
@app.get("/todos/{day}", response_model=List[str])
def list_todos(day: date, session: AcademySession = Depends(get_session)):
    return session.todos_for(day)


@app.post("/todos/{day}")
def add_todo(day: date, payload: TodoCreate, session: AcademySession = Depends(get_session)):
    session.add_todo(day, payload.text)
    return {"message": "created"}


@app.delete("/todos/{day}/{index}")
def remove_todo(day: date, index: int, session: AcademySession = Depends(get_session)):
    session.remove_todo(day, index)
    return {"message": "deleted"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
