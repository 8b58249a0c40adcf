"""journeyflow: Durable execution engine for marketing journeys."""

from .branching import evaluate_branch
from .contracts import JourneyMessage, SendRequest, StepJob
from .coordinator import StepExecutionCoordinator
from .delay import DelayScheduler, compute_delay_ms
from .dispatch import JourneyDispatcher
from .engine import JourneyEngine
from .idempotency import IdempotencyGuard
from .journeys import JourneyService
from .persistence import get_repository
from .reaper import StaleExecutionReaper
from .transports import get_transport
from .triggers import TriggerEvaluator
from .worker import JourneyWorker

__version__ = "0.1.0"
__all__ = [
    "DelayScheduler",
    "IdempotencyGuard",
    "JourneyDispatcher",
    "JourneyEngine",
    "JourneyMessage",
    "JourneyService",
    "JourneyWorker",
    "SendRequest",
    "StaleExecutionReaper",
    "StepExecutionCoordinator",
    "StepJob",
    "TriggerEvaluator",
    "compute_delay_ms",
    "evaluate_branch",
    "get_repository",
    "get_transport",
]
