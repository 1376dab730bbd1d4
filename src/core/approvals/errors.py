class ApprovalError(Exception):
    category = "ERROR"

    @property
    def code(self) -> str:
        return str(self).split(":", 1)[0]


class ApprovalNotFoundError(ApprovalError):
    category = "NOT_FOUND"


class ApprovalDeniedError(ApprovalError):
    category = "DENIED"


class ApprovalConflictError(ApprovalError):
    category = "CONFLICT"


class ApprovalValidationError(ApprovalError):
    category = "INVALID"
