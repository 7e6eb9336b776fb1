"""
Error types raised by the academy backend.

Every error carries a fixed user-facing `message`; the HTTP layer turns them
into HTTPException responses.
"""

AUTH_MESSAGES = {
    "auth/email-already-in-use": "이미 사용 중인 아이디입니다. 다른 아이디를 사용하거나 로그인해주세요.",
    "auth/weak-password": "비밀번호는 6자 이상이어야 합니다.",
    "auth/invalid-email": "유효하지 않은 이메일 형식입니다.",
    "auth/invalid-credential": "아이디 또는 비밀번호가 일치하지 않습니다.",
    "auth/requires-recent-login": "보안상의 이유로 사용자 비밀번호 변경은 해당 사용자가 직접 해야 합니다.",
    "auth/session-expired": "세션이 만료되었습니다. 다시 로그인해주세요.",
}
UNKNOWN_AUTH_MESSAGE = "알 수 없는 오류로 회원가입에 실패했습니다."


class AcademyError(Exception):
    message = "요청을 처리하지 못했습니다."

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class AuthError(AcademyError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(AUTH_MESSAGES.get(code, UNKNOWN_AUTH_MESSAGE))


class ValidationError(AcademyError):
    message = "입력값을 확인해주세요."


class DuplicateRecordError(ValidationError):
    message = "이 날짜에 대한 기록이 이미 존재합니다."

    def __init__(self, date: str):
        self.date = date
        super().__init__()


class NotFoundError(AcademyError):
    def __init__(self, what: str):
        self.what = what
        super().__init__(f"Not found: {what}")


class StaleDocumentError(AcademyError):
    message = "다른 사용자가 먼저 수정했습니다. 새로고침 후 다시 시도해주세요."

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__()


class BackendError(AcademyError):
    message = "데이터베이스 오류가 발생했습니다."

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__()
