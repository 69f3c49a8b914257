"""Lottery lifecycle engine for Discourse topics."""

from .config import EnvironmentConfig, LotterySettings, read_lottery_settings
from .draw import DrawReport, LotteryDrawer, decide_outcome
from .errors import (
    DegradedResolution,
    DrawExecutionError,
    EditWindowExpired,
    FieldError,
    LotteryError,
    ParseEmpty,
    PrerequisiteError,
    ValidationError,
)
from .models import (
    BackupStrategy,
    Lottery,
    LotteryIntent,
    LotteryParams,
    LotteryStatus,
    LotteryType,
    Participant,
)
from .parser import parse_lottery_content, parse_lottery_post
from .repository import LotteryRepository
from .resolver import ParticipantResolver
from .scheduler import TaskCoordinator
from .service import LotteryService
from .storage import LotteryStorage
from .validation import ValidationResult, validate_intent

__all__ = [
    "EnvironmentConfig",
    "LotterySettings",
    "read_lottery_settings",
    "DrawReport",
    "LotteryDrawer",
    "decide_outcome",
    "DegradedResolution",
    "DrawExecutionError",
    "EditWindowExpired",
    "FieldError",
    "LotteryError",
    "ParseEmpty",
    "PrerequisiteError",
    "ValidationError",
    "BackupStrategy",
    "Lottery",
    "LotteryIntent",
    "LotteryParams",
    "LotteryStatus",
    "LotteryType",
    "Participant",
    "parse_lottery_content",
    "parse_lottery_post",
    "LotteryRepository",
    "ParticipantResolver",
    "TaskCoordinator",
    "LotteryService",
    "LotteryStorage",
    "ValidationResult",
    "validate_intent",
]
