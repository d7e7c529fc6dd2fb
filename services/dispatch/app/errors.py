"""
Dispatch Service — ドメインエラー

各エラーは API で返すエラーコードと HTTP ステータスを持つ。
main.py の例外ハンドラが {"error": code} に変換して返す。
"""


class DispatchError(Exception):
    code = "SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)


# ── 割り当て / 確定 (409) ─────────────────────────


class BookingNotFound(DispatchError):
    code = "NOT_FOUND"
    status_code = 409


class AlreadyAssigned(DispatchError):
    code = "ALREADY_ASSIGNED"
    status_code = 409


class NoOnlinePartner(DispatchError):
    code = "NO_ONLINE_PARTNER"
    status_code = 409


class AssignmentConflict(DispatchError):
    """条件付き更新が 0 件だった(ロック外で誰かが先に書き込んだ)"""
    code = "CONFLICT"
    status_code = 409


class AlreadyConfirmed(DispatchError):
    code = "ALREADY_CONFIRMED"
    status_code = 409


class DocumentsNotApproved(DispatchError):
    code = "DOCS_NOT_APPROVED"
    status_code = 409


class NotAssigned(DispatchError):
    code = "NOT_ASSIGNED"
    status_code = 409


# ── ロック ────────────────────────────────────────


class LockBusy(DispatchError):
    code = "LOCK_BUSY"
    status_code = 423


class LockUnavailable(DispatchError):
    """strict ポリシーで共有ストアに到達できない"""
    code = "SERVER_ERROR"
    status_code = 500


# ── 単純な参照・更新 ──────────────────────────────


class NotFound(DispatchError):
    code = "NOT_FOUND"
    status_code = 404


class PartnerNotFound(NotFound):
    pass


class RateLimited(DispatchError):
    code = "RATE_LIMITED"
    status_code = 429
