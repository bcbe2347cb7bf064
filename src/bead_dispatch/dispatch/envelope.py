"""Uniform result envelope printed by every dispatch command."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bead_dispatch.dispatch.errors import DispatchError
from bead_dispatch.storage.common import utc_now


@dataclass(slots=True, frozen=True)
class EnvelopeError:
    code: str
    message: str


@dataclass(slots=True)
class ResultEnvelope:
    """Result of one command invocation, success or failure."""

    command: str
    session: str
    success: bool
    subcommand: str | None = None
    data: dict[str, Any] | None = None
    error: EnvelopeError | None = None
    warnings: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def ok(
        cls,
        command: str,
        session: str,
        data: dict[str, Any],
        *,
        subcommand: str | None = None,
        warnings: list[str] | None = None,
    ) -> ResultEnvelope:
        return cls(
            command=command,
            subcommand=subcommand,
            session=session,
            success=True,
            data=data,
            warnings=list(warnings or []),
        )

    @classmethod
    def failed(  # noqa: PLR0913
        cls,
        command: str,
        session: str,
        error: DispatchError,
        *,
        subcommand: str | None = None,
        data: dict[str, Any] | None = None,
        warnings: list[str] | None = None,
    ) -> ResultEnvelope:
        return cls(
            command=command,
            subcommand=subcommand,
            session=session,
            success=False,
            data=data,
            error=EnvelopeError(code=error.code.value, message=error.message),
            warnings=list(warnings or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "subcommand": self.subcommand,
            "session": self.session,
            "success": self.success,
            "data": self.data,
            "error": (
                {"code": self.error.code, "message": self.error.message}
                if self.error is not None
                else None
            ),
            "warnings": list(self.warnings),
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
