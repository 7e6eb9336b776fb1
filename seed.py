"""
Sample data written for the very first director so a fresh academy is not empty.
"""
import logging
import time
from datetime import date
from typing import Optional

from database import DocumentStore, new_id
from progress import date_key
from schemas import AcademyClass, AttendanceStatus, ClassRecord, Student, TodoDocument

logger = logging.getLogger(__name__)


def _student_ids(count: int):
    base = int(time.time() * 1000)
    return [f"s{base + n}" for n in range(1, count + 1)]


def demo_classes():
    ids = _student_ids(6)
    advanced = AcademyClass(
        name="초6_심화반",
        time="2:50",
        teacher_id="",
        students=[
            Student(id=ids[0], name="김민준", attendance=AttendanceStatus.PRESENT, last_attended="2025-09-01"),
            Student(id=ids[1], name="박서연", attendance=AttendanceStatus.ABSENT, last_attended="2025-08-29"),
            Student(id=ids[2], name="이도윤", attendance=AttendanceStatus.LATE, last_attended="2025-09-01"),
        ],
        records=[
            ClassRecord(date="2025-09-01", progress_textbook="쎈수학", progress_range="12-15",
                        homework_textbook="쎈수학", homework_range="10-11",
                        memo="민준이 질문 많았음. 개념 보충 필요.", is_completed=True),
            ClassRecord(date="2025-09-03", progress_textbook="쎈수학", progress_range="16-18",
                        homework_textbook="쎈수학", homework_range="12-15"),
        ],
        progress_textbooks=["개념원리", "쎈수학"],
        homework_textbooks=["쎈수학"],
    )
    middle = AcademyClass(
        name="중2_A반",
        time="4:30",
        teacher_id="",
        students=[
            Student(id=ids[3], name="최지우", last_attended="2025-08-30"),
            Student(id=ids[4], name="한강민", last_attended="2025-08-30"),
            Student(id=ids[5], name="윤아인", last_attended="2025-08-30"),
        ],
        records=[
            ClassRecord(date="2025-09-01", progress_textbook="일품 중2", progress_range="22-25",
                        homework_textbook="일품 중2", homework_range="20-21",
                        memo="다음 주 단원평가 예정.", is_completed=True),
            ClassRecord(date="2025-09-02", progress_textbook="블랙라벨", progress_range="5-8",
                        homework_textbook="일품 중2", homework_range="22-24"),
        ],
        progress_textbooks=["블랙라벨", "일품 중2"],
        homework_textbooks=["일품 중2"],
    )
    return [advanced, middle]


def seed_demo_data(store: DocumentStore, director_id: str, today: Optional[date] = None) -> None:
    batch = store.batch()
    for cls in demo_classes():
        batch.set("classes", new_id(), cls)
    todos = TodoDocument(daily_todos={
        date_key(today or date.today()): [
            "샘플 데이터 확인하기",
            "설정 탭에서 강사 계정 추가하기",
        ]
    })
    batch.set("todos", director_id, todos)
    batch.commit()
    logger.info("Seeded demo data for first director %s", director_id)
