"""
Dispatch Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the Dispatch Engine.

CRITICAL CONSTRAINTS:
- Every non-terminal status has a timeout
- Search attempts are bounded
- Penalties are capped

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from decimal import Decimal

from dotenv import load_dotenv

from .types import OrderStatus


# ============================================================
# STATUS TIMEOUTS
# ============================================================

@dataclass
class StatusTimeoutConfig:
    """
    Per-status timeouts in seconds.

    Field names match OrderStatus values.
    """

    new: float = 60.0
    """Safety net if search was never started."""

    searching: float = 300.0
    """Whole-search watchdog."""

    assigned: float = 30.0
    """Executor response window after assignment."""

    rejected: float = 30.0
    """Restart search if it did not resume on its own."""

    accepted: float = 300.0
    """Remind executor to start moving."""

    en_route: float = 3600.0
    """Travel budget."""

    arrived: float = 600.0
    """Time to start work after arrival."""

    in_progress: float = 10800.0
    """Work budget."""

    on_hold: float = 1800.0
    """Maximum pause."""

    disputed: float = 86400.0
    """Dispute resolution budget."""

    def for_status(self, status: OrderStatus) -> Optional[float]:
        """Timeout for a status, None for terminal ones."""
        if status.is_terminal():
            return None
        return getattr(self, status.value)


# ============================================================
# SEARCH CONFIGURATION
# ============================================================

@dataclass
class SearchConfig:
    """
    Radius-expansion search configuration.

    SAFETY: Attempts are bounded by max_attempts.
    """

    initial_radius_m: int = 5000
    """Radius of the first attempt."""

    radius_step_m: int = 5000
    """Radius increase between attempts."""

    max_radius_m: int = 30000
    """Default radius cap."""

    max_radius_by_service: Dict[str, int] = field(default_factory=lambda: {
        "towing": 50000,
        "evacuation": 50000,
    })
    """Radius cap per service type."""

    max_attempts: int = 5
    """Attempts before the order expires."""

    inter_attempt_delay_seconds: float = 60.0
    """Pause between attempts."""

    min_rating: float = 3.5
    """Candidates rated below this are skipped."""

    candidate_limit: int = 50
    """Maximum candidates requested per attempt."""

    collaborator_timeout_seconds: float = 10.0
    """Timeout for each collaborator call."""

    workers: int = 4
    """Concurrent search loops in the worker pool."""

    def max_radius_for(self, service_type: str) -> int:
        return self.max_radius_by_service.get(service_type, self.max_radius_m)


@dataclass
class OfferConfig:
    """Offer dispatch configuration."""

    max_notify: int = 10
    """Top-N candidates offered per attempt."""

    batch_size: int = 5
    """Offers delivered concurrently per batch."""

    offer_ttl_seconds: float = 30.0
    """How long an executor may accept an offer."""


@dataclass
class RankingConfig:
    """
    Candidate ranking weights.

    Score = weighted sum of normalized factors, times relationship modifier.
    """

    distance_weight: float = 0.3
    rating_weight: float = 0.25
    availability_weight: float = 0.1

    preferred_modifier: float = 1.5
    """Multiplier for executors the requester asked for."""

    previous_modifier: float = 1.3
    """Multiplier for executors who served the requester before."""


# ============================================================
# CANCELLATION CONFIGURATION
# ============================================================

@dataclass
class CancellationConfig:
    """Cancellation penalty configuration."""

    free_window_seconds: float = 120.0
    """Requester may cancel for free within this window after creation."""

    standard_penalty_rate: Decimal = Decimal("0.10")
    """Share of the order total charged after the free window."""

    arrived_penalty_rate: Decimal = Decimal("0.50")
    """Share charged once the executor arrived."""

    max_penalty: Decimal = Decimal("50000")
    """Penalty cap."""


# ============================================================
# CREATION CONFIGURATION
# ============================================================

@dataclass
class CreationConfig:
    """Order creation limits and defaults."""

    max_active_orders: int = 3
    """Concurrent active orders per requester."""

    max_daily_orders: int = 10
    """Orders per requester per UTC day."""

    lock_ttl_seconds: int = 10
    """Per-requester creation lock TTL."""

    order_number_prefix: str = "Y24"
    """Prefix of human-readable order numbers."""

    min_schedule_ahead_seconds: float = 300.0
    """Scheduled orders must be at least this far ahead."""

    max_schedule_ahead_seconds: float = 30 * 86400.0
    """Scheduled orders must be at most this far ahead."""

    critical_service_types: List[str] = field(default_factory=lambda: [
        "towing",
        "accident_assistance",
    ])
    """Service types that get URGENT priority."""

    arrival_radius_m: float = 500.0
    """Executor must be this close to confirm arrival."""


# ============================================================
# ALERTING CONFIGURATION
# ============================================================

@dataclass
class DispatchAlertingConfig:
    """Operator alerting configuration."""

    telegram_enabled: bool = False
    """Whether Telegram alerts are enabled."""

    telegram_bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    """Environment variable for Telegram bot token."""

    telegram_chat_id_env: str = "TELEGRAM_CHAT_ID"
    """Environment variable for Telegram chat ID."""

    min_severity: str = "WARNING"
    """Minimum severity to alert (INFO, WARNING, ERROR, CRITICAL)."""

    max_alerts_per_minute: int = 10
    """Maximum alerts per minute."""

    aggregate_similar: bool = True
    """Whether to aggregate similar alerts."""

    aggregation_window_seconds: float = 60.0
    """Window for aggregating similar alerts."""

    alert_on_search_exhausted: bool = True
    """Alert when an order expires without an executor."""

    alert_on_sla_breach: bool = True
    """Alert when a fulfilment status overruns its timeout."""

    alert_on_collaborator_failure: bool = True
    """Alert when a collaborator fails."""

    min_alert_interval_seconds: float = 5.0
    """Minimum interval between alerts."""


@dataclass
class StorageConfig:
    """Backing services."""

    database_url: Optional[str] = None
    """SQLAlchemy async URL; None keeps orders in memory."""

    redis_url: Optional[str] = None
    """Redis URL for creation locks; None uses in-process locks."""

    journal_max_events: Optional[int] = 10000
    """Events kept by the service journal; oldest drop first. None keeps all."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class DispatchEngineConfig:
    """
    Master configuration for Dispatch Engine.
    """

    timeouts: StatusTimeoutConfig = field(default_factory=StatusTimeoutConfig)
    """Status timeouts."""

    search: SearchConfig = field(default_factory=SearchConfig)
    """Search configuration."""

    offers: OfferConfig = field(default_factory=OfferConfig)
    """Offer configuration."""

    ranking: RankingConfig = field(default_factory=RankingConfig)
    """Ranking configuration."""

    cancellation: CancellationConfig = field(default_factory=CancellationConfig)
    """Cancellation configuration."""

    creation: CreationConfig = field(default_factory=CreationConfig)
    """Creation configuration."""

    alerting: DispatchAlertingConfig = field(default_factory=DispatchAlertingConfig)
    """Alerting configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    """Storage configuration."""

    @classmethod
    def for_testing(cls) -> "DispatchEngineConfig":
        """Get configuration for testing: no waiting between attempts."""
        return cls(
            search=SearchConfig(
                inter_attempt_delay_seconds=0.0,
                collaborator_timeout_seconds=1.0,
                workers=1,
            ),
            offers=OfferConfig(offer_ttl_seconds=30.0),
            storage=StorageConfig(journal_max_events=None),
        )

    @classmethod
    def for_production(cls) -> "DispatchEngineConfig":
        """Get configuration for production."""
        return cls(
            alerting=DispatchAlertingConfig(telegram_enabled=True),
        )

    @classmethod
    def from_env(cls) -> "DispatchEngineConfig":
        """Build production configuration with environment overrides."""
        load_dotenv()
        config = cls.for_production()

        search_timeout = os.getenv("ORDER_SEARCH_TIMEOUT")
        if search_timeout:
            config.timeouts.searching = float(search_timeout)
        response_timeout = os.getenv("MASTER_RESPONSE_TIMEOUT")
        if response_timeout:
            config.timeouts.assigned = float(response_timeout)
            config.offers.offer_ttl_seconds = float(response_timeout)

        max_active = os.getenv("MAX_ACTIVE_ORDERS_PER_CUSTOMER")
        if max_active:
            config.creation.max_active_orders = int(max_active)
        max_daily = os.getenv("MAX_DAILY_ORDERS_PER_CUSTOMER")
        if max_daily:
            config.creation.max_daily_orders = int(max_daily)
        prefix = os.getenv("ORDER_NUMBER_PREFIX")
        if prefix:
            config.creation.order_number_prefix = prefix

        config.storage.database_url = os.getenv("DATABASE_URL") or None
        config.storage.redis_url = os.getenv("REDIS_URL") or None
        journal_max = os.getenv("EVENT_JOURNAL_MAX_EVENTS")
        if journal_max:
            config.storage.journal_max_events = int(journal_max) or None
        config.alerting.telegram_enabled = bool(
            os.getenv("TELEGRAM_BOT_TOKEN") and os.getenv("TELEGRAM_CHAT_ID")
        )
        return config
