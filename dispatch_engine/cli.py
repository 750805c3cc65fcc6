"""
Dispatch Engine - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the dispatch engine.

- `simulate` runs an in-memory dispatch of N orders against
  simulated executors and prints the resulting metrics
- `transitions` prints the status table with timeouts

============================================================
USAGE
============================================================
python -m dispatch_engine.cli simulate --orders 20 --executors 15
python -m dispatch_engine.cli transitions

============================================================
"""

import argparse
import asyncio
import logging
import random
import sys
from collections import Counter
from typing import List, Optional

from .candidates import InMemoryCandidateSource, ExecutorProfile
from .collaborators import InMemoryExecutorDirectory, FixedPricing
from .config import DispatchEngineConfig, OfferConfig, SearchConfig, StatusTimeoutConfig
from .notifier import InMemoryNotifier, SentOffer
from .service import DispatchService
from .status_registry import StatusRegistry, STATUS_TRANSITIONS
from .types import Actor, Location, OrderStatus, DispatchEngineError


logger = logging.getLogger(__name__)


CITY_CENTER = Location(lat=55.7558, lng=37.6173, address="City center")
SERVICE_TYPES = ["towing", "tire_change", "battery_jump", "fuel_delivery", "lockout"]


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="dispatch-engine",
        description="Roadside service order dispatch engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  simulate     - Dispatch simulated orders to simulated executors
  transitions  - Print the order status table

Examples:
  %(prog)s simulate --orders 20 --executors 15 --accept-rate 0.6
  %(prog)s transitions
        """
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # --------------------------------------------------------
    # simulate
    # --------------------------------------------------------
    simulate = subparsers.add_parser("simulate", help="Run an in-memory dispatch simulation")
    simulate.add_argument("--orders", type=int, default=10, help="Orders to submit (default: 10)")
    simulate.add_argument("--executors", type=int, default=10, help="Simulated executors (default: 10)")
    simulate.add_argument(
        "--accept-rate",
        type=float,
        default=0.5,
        help="Probability an executor accepts an offer (default: 0.5)",
    )
    simulate.add_argument(
        "--spread-km",
        type=float,
        default=20.0,
        help="Executors are placed up to this far from the center (default: 20)",
    )
    simulate.add_argument("--seed", type=int, default=None, help="Random seed")
    simulate.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        metavar="SECONDS",
        help="Give up waiting for orders to settle after this long (default: 60)",
    )

    # --------------------------------------------------------
    # transitions
    # --------------------------------------------------------
    subparsers.add_parser("transitions", help="Print the status transition table")

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )
    return parser


def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []
    if args.command == "simulate":
        if args.orders < 1:
            errors.append("--orders must be at least 1")
        if args.executors < 0:
            errors.append("--executors cannot be negative")
        if not 0.0 <= args.accept_rate <= 1.0:
            errors.append("--accept-rate must be between 0 and 1")
        if args.timeout <= 0:
            errors.append("--timeout must be positive")
    return errors


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ============================================================
# TRANSITIONS
# ============================================================

def show_transitions() -> None:
    """Print the status table."""
    registry = StatusRegistry()
    print(f"\n{'STATUS':<12} {'TIMEOUT':>8}  {'ON TIMEOUT':<20} NEXT")
    print("=" * 72)
    for status in OrderStatus:
        timeout = registry.timeout_for(status)
        action = registry.timeout_action(status)
        targets = ", ".join(s.value for s in registry.next_statuses(status)) or "-"
        print(
            f"{status.value:<12} "
            f"{(f'{timeout:.0f}s' if timeout is not None else '-'):>8}  "
            f"{(action.value if action else '-'):<20} {targets}"
        )
    print(f"\n{sum(len(t) for t in STATUS_TRANSITIONS.values())} transitions\n")


# ============================================================
# SIMULATION
# ============================================================

class SimulatedExecutors(InMemoryExecutorDirectory):
    """Executor directory that keeps candidate profiles busy while reserved."""

    def __init__(self, source: InMemoryCandidateSource):
        super().__init__()
        self._source = source

    async def reserve(self, executor_id: str, order_id: str) -> None:
        await super().reserve(executor_id, order_id)
        profile = self._source.get_executor(executor_id)
        if profile is not None:
            profile.active_orders += 1

    async def release(self, executor_id: str, order_id: str) -> None:
        await super().release(executor_id, order_id)
        profile = self._source.get_executor(executor_id)
        if profile is not None and profile.active_orders > 0:
            profile.active_orders -= 1


def _scatter(rng: random.Random, spread_km: float) -> Location:
    # ~111 km per degree of latitude
    d_lat = rng.uniform(-spread_km, spread_km) / 111.0
    d_lng = rng.uniform(-spread_km, spread_km) / 63.0
    return Location(lat=CITY_CENTER.lat + d_lat, lng=CITY_CENTER.lng + d_lng)


def simulation_config() -> DispatchEngineConfig:
    """Short timeouts so a simulation settles in seconds."""
    config = DispatchEngineConfig.for_testing()
    config.search = SearchConfig(
        max_attempts=3,
        inter_attempt_delay_seconds=0.2,
        collaborator_timeout_seconds=1.0,
        workers=4,
    )
    config.offers = OfferConfig(max_notify=5, batch_size=5, offer_ttl_seconds=1.0)
    config.timeouts = StatusTimeoutConfig(searching=30.0, assigned=2.0, rejected=2.0)
    config.creation.max_active_orders = 1000
    config.creation.max_daily_orders = 1000
    return config


async def run_simulation(args: argparse.Namespace) -> int:
    rng = random.Random(args.seed)
    source = InMemoryCandidateSource([
        ExecutorProfile(
            executor_id=f"exec-{i:03d}",
            location=_scatter(rng, args.spread_km),
            rating=round(rng.uniform(3.0, 5.0), 1),
            max_active_orders=1,
        )
        for i in range(args.executors)
    ])

    service: Optional[DispatchService] = None
    background: List[asyncio.Task] = []

    async def fulfil(order_id: str, executor_id: str) -> None:
        coordinator = service.coordinator
        await asyncio.sleep(rng.uniform(0.05, 0.2))
        await coordinator.start_route(order_id, executor_id)
        await asyncio.sleep(rng.uniform(0.05, 0.2))
        await coordinator.confirm_arrival(order_id, executor_id)
        await coordinator.start_work(order_id, executor_id)
        await asyncio.sleep(rng.uniform(0.05, 0.2))
        await coordinator.complete(order_id, Actor.executor(executor_id), work_summary="Done on site")

    async def respond(sent: SentOffer) -> None:
        await asyncio.sleep(rng.uniform(0.01, 0.3))
        order_id = sent.summary.order_id
        try:
            if rng.random() < args.accept_rate:
                await service.coordinator.accept(order_id, sent.executor_id)
                await fulfil(order_id, sent.executor_id)
            else:
                await service.coordinator.reject(order_id, sent.executor_id, "busy")
        except DispatchEngineError as e:
            logger.info(f"{sent.executor_id} on {order_id}: {e}")

    async def on_offer(sent: SentOffer) -> None:
        background.append(asyncio.create_task(respond(sent)))

    service = DispatchService(
        candidates=source,
        notifier=InMemoryNotifier(on_offer=on_offer),
        config=simulation_config(),
        pricing=FixedPricing(),
        executors=SimulatedExecutors(source),
    )
    await service.start()

    order_ids = []
    try:
        for n in range(args.orders):
            order = await service.submit_order(f"req-{n:03d}", {
                "service_type": rng.choice(SERVICE_TYPES),
                "location": _scatter(rng, args.spread_km / 2).to_dict(),
                "description": "Simulated breakdown",
            })
            order_ids.append(order.order_id)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.timeout
        while loop.time() < deadline:
            orders = [await service.coordinator.get_order(o) for o in order_ids]
            if all(o.status.is_terminal() for o in orders):
                break
            await asyncio.sleep(0.2)

        orders = [await service.coordinator.get_order(o) for o in order_ids]
    finally:
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await service.stop()

    print_summary(orders, service)
    return 0


def print_summary(orders, service: DispatchService) -> None:
    statuses = Counter(o.status.value for o in orders)
    metrics = service.metrics()
    print()
    print("=" * 60)
    print("  DISPATCH SIMULATION")
    print("=" * 60)
    for status, count in sorted(statuses.items()):
        print(f"  {status:<12} {count}")
    print("-" * 60)
    print(f"  Orders created:        {metrics.orders_created}")
    print(f"  Search attempts:       {metrics.search_attempts}")
    print(f"  Collaborator failures: {metrics.collaborator_failures}")
    attempts = [len(o.search_state.attempts) for o in orders]
    if attempts:
        print(f"  Attempts per order:    {sum(attempts) / len(attempts):.2f}")
    print("=" * 60)
    print()


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace) -> int:
    try:
        if args.command == "simulate":
            return await run_simulation(args)
        show_transitions()
        return 0
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130
    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    setup_logging(args.log_level)
    return asyncio.run(async_main(args))


if __name__ == "__main__":
    sys.exit(main())
