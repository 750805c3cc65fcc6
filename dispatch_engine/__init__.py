"""
Dispatch Engine Package.

============================================================
PURPOSE
============================================================
Dispatches roadside-service orders to executors.

CRITICAL PRINCIPLE:
    "Only the LifecycleCoordinator changes an order's status."
    "A stale timer or a late executor never wins a race."

AUTHORITY BOUNDARIES:
    CAN:
        - Create orders under per-requester quotas
        - Search for executors and send offers
        - Move orders through their lifecycle
        - Cancel orders and compute penalties

    MUST NOT:
        - Collect penalties (wallet concern)
        - Deliver push notifications itself
        - Assign an excluded executor

============================================================
MODULES
============================================================
- types: Order aggregate, statuses, collaborator types, exceptions
- config: Engine configuration
- errors: Error taxonomy and codes
- clock: Time source
- status_registry: Transition table, timeouts, timeout/entry actions
- store: Order store contract and in-memory store
- models: ORM models for persistence
- repository: SQL order store
- events: Domain events, event bus, metrics
- locks: Creation locks (in-process, Redis)
- validation: Creation payload validation
- creation_guard: Per-requester lock and quotas
- cancellation: Cancellation policy
- candidates: Candidate search and ranking
- notifier: Offer delivery
- collaborators: Pricing and executor directory
- timers: Status timers
- lifecycle: Lifecycle coordinator
- search: Search orchestrator
- alerting: Telegram alerts
- service: Runnable service wiring
- cli: Command-line interface

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderStatus,
    OrderPriority,
    ActorRole,
    OrderType,
    OrderSource,
    PaymentMethod,
    SearchOutcome,
    OfferEventKind,
    # Status groups
    ACTIVE_STATUSES,
    FINAL_STATUSES,
    WITH_EXECUTOR_STATUSES,
    CANCELLABLE_STATUSES,
    # Dataclasses
    Location,
    Actor,
    CandidateSnapshot,
    SearchAttempt,
    OfferLogEntry,
    SearchState,
    ExecutorAssignment,
    HistoryEntry,
    OrderTiming,
    CancellationRecord,
    PausedBudget,
    Order,
    Candidate,
    AvailabilityResult,
    SearchCriteria,
    OfferSummary,
    DispatchResult,
    CancellationDecision,
    SearchResult,
    # Exceptions
    DispatchEngineError,
    ValidationError,
    QuotaExceeded,
    CreationInProgress,
    InvalidTransition,
    StaleTransition,
    SearchExhausted,
    InvariantViolation,
    OrderNotFound,
    ExecutorMismatch,
    NotCancellable,
    CollaboratorError,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    StatusTimeoutConfig,
    SearchConfig,
    OfferConfig,
    RankingConfig,
    CancellationConfig,
    CreationConfig,
    DispatchAlertingConfig,
    StorageConfig,
    DispatchEngineConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
    should_alert,
    RETRYABLE_ERROR_CODES,
    ALERT_ERROR_CODES,
)

# ============================================================
# CORE COMPONENTS
# ============================================================
from .clock import ClockProtocol, SystemClock, MockClock
from .status_registry import (
    STATUS_TRANSITIONS,
    STATUS_GROUPS,
    TimeoutAction,
    EntryAction,
    StatusRegistry,
)
from .store import OrderPatch, OrderStore, InMemoryOrderStore, DuplicateOrderError
from .events import (
    DispatchEvent,
    OrderCreated,
    StatusChanged,
    SearchAttemptCompleted,
    OrderSearchFailed,
    CollaboratorFailure,
    ExecutorReminder,
    SlaBreached,
    OrderCancelled,
    EventSink,
    NullEventSink,
    EventBus,
    EventJournal,
    DispatchMetrics,
)
from .locks import LockProvider, InMemoryLockProvider, RedisLockProvider
from .validation import OrderRequest, OrderPayloadValidator
from .creation_guard import CreationGuard
from .cancellation import CancellationPolicy
from .candidates import (
    CandidateSource,
    ExecutorProfile,
    InMemoryCandidateSource,
    CandidateRanker,
    haversine_m,
)
from .notifier import DispatchNotifier, InMemoryNotifier, SentOffer
from .collaborators import (
    PricingCollaborator,
    FixedPricing,
    ExecutorDirectory,
    InMemoryExecutorDirectory,
)
from .timers import TimeoutTask, TimerService, AsyncioTimerService, ManualTimerService
from .lifecycle import LifecycleCoordinator
from .search import SearchOrchestrator

# ============================================================
# PERSISTENCE
# ============================================================
from .models import DispatchOrderModel, DispatchOrderSequenceModel, DispatchEventModel
from .repository import SqlOrderStore

# ============================================================
# ALERTING AND SERVICE
# ============================================================
from .alerting import AlertSeverity, AlertType, Alert, TelegramAlerter
from .service import DispatchService


# ============================================================
# VERSION
# ============================================================
__version__ = "1.0.0"


# ============================================================
# ALL EXPORTS
# ============================================================
__all__ = [
    # Types
    "OrderStatus",
    "OrderPriority",
    "ActorRole",
    "OrderType",
    "OrderSource",
    "PaymentMethod",
    "SearchOutcome",
    "OfferEventKind",
    "ACTIVE_STATUSES",
    "FINAL_STATUSES",
    "WITH_EXECUTOR_STATUSES",
    "CANCELLABLE_STATUSES",
    "Location",
    "Actor",
    "CandidateSnapshot",
    "SearchAttempt",
    "OfferLogEntry",
    "SearchState",
    "ExecutorAssignment",
    "HistoryEntry",
    "OrderTiming",
    "CancellationRecord",
    "PausedBudget",
    "Order",
    "Candidate",
    "AvailabilityResult",
    "SearchCriteria",
    "OfferSummary",
    "DispatchResult",
    "CancellationDecision",
    "SearchResult",
    "DispatchEngineError",
    "ValidationError",
    "QuotaExceeded",
    "CreationInProgress",
    "InvalidTransition",
    "StaleTransition",
    "SearchExhausted",
    "InvariantViolation",
    "OrderNotFound",
    "ExecutorMismatch",
    "NotCancellable",
    "CollaboratorError",
    # Config
    "StatusTimeoutConfig",
    "SearchConfig",
    "OfferConfig",
    "RankingConfig",
    "CancellationConfig",
    "CreationConfig",
    "DispatchAlertingConfig",
    "StorageConfig",
    "DispatchEngineConfig",
    # Errors
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    "should_alert",
    "RETRYABLE_ERROR_CODES",
    "ALERT_ERROR_CODES",
    # Core
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "STATUS_TRANSITIONS",
    "STATUS_GROUPS",
    "TimeoutAction",
    "EntryAction",
    "StatusRegistry",
    "OrderPatch",
    "OrderStore",
    "InMemoryOrderStore",
    "DuplicateOrderError",
    "DispatchEvent",
    "OrderCreated",
    "StatusChanged",
    "SearchAttemptCompleted",
    "OrderSearchFailed",
    "CollaboratorFailure",
    "ExecutorReminder",
    "SlaBreached",
    "OrderCancelled",
    "EventSink",
    "NullEventSink",
    "EventBus",
    "EventJournal",
    "DispatchMetrics",
    "LockProvider",
    "InMemoryLockProvider",
    "RedisLockProvider",
    "OrderRequest",
    "OrderPayloadValidator",
    "CreationGuard",
    "CancellationPolicy",
    "CandidateSource",
    "ExecutorProfile",
    "InMemoryCandidateSource",
    "CandidateRanker",
    "haversine_m",
    "DispatchNotifier",
    "InMemoryNotifier",
    "SentOffer",
    "PricingCollaborator",
    "FixedPricing",
    "ExecutorDirectory",
    "InMemoryExecutorDirectory",
    "TimeoutTask",
    "TimerService",
    "AsyncioTimerService",
    "ManualTimerService",
    "LifecycleCoordinator",
    "SearchOrchestrator",
    # Persistence
    "DispatchOrderModel",
    "DispatchOrderSequenceModel",
    "DispatchEventModel",
    "SqlOrderStore",
    # Alerting and service
    "AlertSeverity",
    "AlertType",
    "Alert",
    "TelegramAlerter",
    "DispatchService",
]
