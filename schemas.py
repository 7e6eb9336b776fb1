"""
Document Schemas for the Academy Manager

Each Pydantic model below maps to a document shape in the store. Field names
are snake_case in Python and camelCase in the stored documents and on the wire
(e.g. `login_id` <-> "loginId").

Collections:
- "users"   -> User            (document id = identity uid)
- "classes" -> AcademyClass    (students and records embedded)
- "todos"   -> TodoDocument    (document id = user id)
"""
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["director", "teacher"]


class AttendanceStatus(str, Enum):
    """Stored values are the labels shown to staff."""
    UNCHECKED = "확인중"
    PRESENT = "출석"
    LATE = "지각"
    ABSENT = "결석"

    def next(self) -> "AttendanceStatus":
        return ATTENDANCE_CYCLE[self]


ATTENDANCE_CYCLE = {
    AttendanceStatus.UNCHECKED: AttendanceStatus.PRESENT,
    AttendanceStatus.PRESENT: AttendanceStatus.LATE,
    AttendanceStatus.LATE: AttendanceStatus.ABSENT,
    AttendanceStatus.ABSENT: AttendanceStatus.UNCHECKED,
}


class DocumentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_document(cls, doc: dict):
        data = {k: v for k, v in doc.items() if k != "_id"}
        data["id"] = str(doc["_id"])
        return cls.model_validate(data)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})


class User(DocumentModel):
    """
    Staff account profile
    Collection: "users"
    """
    id: str = ""
    login_id: str = Field(..., alias="loginId", description="Sign-in identifier (email)")
    name: str = Field(..., description="Display name")
    role: Role = Field("teacher", description="director sees everything, teacher only own classes")


class Student(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    attendance: AttendanceStatus = AttendanceStatus.UNCHECKED
    last_attended: str = Field("", alias="lastAttended", description="YYYY-MM-DD")


class ClassRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date: str = Field(..., description="YYYY-MM-DD, unique within a class")
    progress_textbook: str = Field("", alias="progressTextbook")
    progress_range: str = Field("", alias="progressRange", description="Page range e.g. 12-15")
    homework_textbook: str = Field("", alias="homeworkTextbook")
    homework_range: str = Field("", alias="homeworkRange")
    memo: str = ""
    is_completed: bool = Field(False, alias="isCompleted")


class AcademyClass(DocumentModel):
    """
    A class with its embedded students and session records
    Collection: "classes"
    """
    id: str = ""
    name: str
    time: str = Field(..., description="Time label e.g. 2:50")
    teacher_id: Optional[str] = Field("", alias="teacherId", description="Empty string when unassigned")
    students: List[Student] = Field(default_factory=list)
    records: List[ClassRecord] = Field(default_factory=list)
    progress_textbooks: List[str] = Field(default_factory=list, alias="progressTextbooks")
    homework_textbooks: List[str] = Field(default_factory=list, alias="homeworkTextbooks")
    version: int = 0

    def find_record(self, date: str) -> Optional[ClassRecord]:
        return next((r for r in self.records if r.date == date), None)

    def find_student(self, student_id: str) -> Optional[Student]:
        return next((s for s in self.students if s.id == student_id), None)


class TodoDocument(DocumentModel):
    """
    Per-user to-dos keyed by date
    Collection: "todos"
    """
    id: str = ""
    daily_todos: Dict[str, List[str]] = Field(default_factory=dict, alias="dailyTodos")


class AttendanceSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    class_id: str = Field(..., alias="classId")
    class_name: str = Field(..., alias="className")
    time: str
    present: int = 0
    absent: int = 0
    late: int = 0


# Request payloads

class SignUpRequest(BaseModel):
    name: str
    email: str
    password: str


class UserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    login_id: str = Field(..., alias="loginId")
    name: str
    role: Role = "teacher"
    password: Optional[str] = None


class UserUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    login_id: Optional[str] = Field(None, alias="loginId")
    name: Optional[str] = None
    role: Optional[Role] = None
    password: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class ClassCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    time: str
    teacher_id: Optional[str] = Field("", alias="teacherId")


class ClassUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    time: Optional[str] = None
    teacher_id: Optional[str] = Field(None, alias="teacherId")
    progress_textbooks: Optional[List[str]] = Field(None, alias="progressTextbooks")
    homework_textbooks: Optional[List[str]] = Field(None, alias="homeworkTextbooks")


class StudentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    last_attended: str = Field(..., alias="lastAttended")


class StudentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    last_attended: Optional[str] = Field(None, alias="lastAttended")


class RecordUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    progress_textbook: Optional[str] = Field(None, alias="progressTextbook")
    progress_range: Optional[str] = Field(None, alias="progressRange")
    homework_textbook: Optional[str] = Field(None, alias="homeworkTextbook")
    homework_range: Optional[str] = Field(None, alias="homeworkRange")
    memo: Optional[str] = None
    is_completed: Optional[bool] = Field(None, alias="isCompleted")


class AttendanceUpdate(BaseModel):
    students: List[Student]


class TodoCreate(BaseModel):
    text: str
