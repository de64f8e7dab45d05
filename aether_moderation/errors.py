"""Error taxonomy and operation results."""

from __future__ import annotations

from dataclasses import dataclass

CODE_VALIDATION = "validation"
CODE_NOT_FOUND = "not_found"
CODE_STORE = "store"


class ModerationError(Exception):
    code = "error"


class ValidationError(ModerationError):
    """Rejected input: self-block, self-follow, follow list at capacity."""

    code = CODE_VALIDATION


class NotFoundError(ModerationError):
    """Missing edge or follow entry.

    Unblocking or unfollowing something absent succeeds, so the coordinator
    never returns this; it exists for collaborators and callers that need
    the distinction.
    """

    code = CODE_NOT_FOUND


class StoreError(ModerationError):
    """Remote transport or consistency failure reported by a collaborator."""

    code = CODE_STORE


class RevisionConflict(StoreError):
    pass


class CacheUnavailable(ModerationError):
    code = "cache_unavailable"


@dataclass(frozen=True)
class OperationResult:
    success: bool
    error: str | None = None
    code: str | None = None

    @classmethod
    def ok(cls) -> OperationResult:
        return cls(success=True)

    @classmethod
    def failed(cls, exc: ModerationError) -> OperationResult:
        return cls(success=False, error=str(exc), code=exc.code)

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"success": self.success}
        if self.error is not None:
            out["error"] = self.error
            out["code"] = self.code
        return out
