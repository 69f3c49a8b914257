"""Exception types raised by the lottery engine."""

from __future__ import annotations

from dataclasses import dataclass


class LotteryError(Exception):
    """Base class for user-facing lottery failures."""


class ParseEmpty(LotteryError):
    """Raised when a ``[lottery]`` block carries no recognised field."""

    def __init__(self, message: str = "无法解析抽奖数据，请检查格式是否正确") -> None:
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return self.message


class ValidationError(LotteryError):
    """Raised with every field or business-rule violation found."""

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(error) for error in self.errors))

    @property
    def fields(self) -> set[str]:
        return {error.field for error in self.errors}


class PrerequisiteError(LotteryError):
    """Raised when a lottery cannot be created for the topic at all."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class EditWindowExpired(LotteryError):
    def __init__(self, message: str = "抽奖已过编辑期限，无法修改") -> None:
        super().__init__(message)


class DrawExecutionError(LotteryError):
    """Wraps an unexpected failure during a draw."""


class DegradedResolution(LotteryError):
    """Participant resolution had to fall back to the simplified filter."""


class InvalidTransition(RuntimeError):
    """Programming error: a lottery status may only move forward once."""


__all__ = [
    "LotteryError",
    "ParseEmpty",
    "FieldError",
    "ValidationError",
    "PrerequisiteError",
    "EditWindowExpired",
    "DrawExecutionError",
    "DegradedResolution",
    "InvalidTransition",
]
