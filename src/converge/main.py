"""Entry points tying the pipeline together.

One cycle runs:
    declarations -> graph builder -> dependency resolver (order)
        -> external fetcher -> planner (actions)
        -> reconciler (apply in order) -> updated state store

Schema, cycle and fetch errors surface before any provider call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from .config import Config
from .dependency import resolve
from .external import ExternalDataFetcher
from .graph import ResourceGraph, build
from .guardrails import GuardrailEnforcer, GuardrailsConfig
from .ignore_rules import IgnoreRulesConfig, IgnoreRulesEvaluator
from .plan import ExecutionPlan, Planner
from .provenance import ChangeProvenanceSummary, get_provenance_logger
from .provider import Provider, load_provider
from .reconciler import ApplyResult, Reconciler
from .schemas import SchemaRegistry
from .spec_loader import load_declarations
from .state import StateStore

logger = logging.getLogger(__name__)

LOG_HANDLER_NAME = "converge"

_RESERVED_RECORD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure logging on stderr.

    Args:
        level: Log level name; defaults to LOG_LEVEL or INFO.
        fmt: "json" (default, from LOG_FORMAT) or "text".
    """
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.environ.get("LOG_FORMAT", "json")).lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(LOG_HANDLER_NAME)
    if fmt == "text":
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == LOG_HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    # Reduce noise from the HTTP client
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@dataclass
class Cycle:
    """Everything one plan/apply cycle works with."""

    config: Config
    graph: ResourceGraph
    plan: ExecutionPlan
    store: StateStore
    provider: Provider
    planner: Planner
    guardrails: GuardrailEnforcer


async def prepare_cycle(
    config: Config,
    provider: Provider | None = None,
    fetcher: ExternalDataFetcher | None = None,
    ignore_rules: IgnoreRulesConfig | None = None,
    guardrails: GuardrailEnforcer | None = None,
) -> Cycle:
    """Load declarations, validate them and build the execution plan.

    Raises:
        SchemaError: On invalid declarations (including DeclarationLoadError).
        CycleError: If references form a cycle.
        StateError: If the state file is unusable.
        FetchError: If an external value cannot be fetched.
        ConfigurationError: If the provider cannot be loaded.
    """
    provider = provider or load_provider(config.provider)
    guardrails = guardrails or GuardrailEnforcer(GuardrailsConfig.from_env())
    ignore_rules = ignore_rules or IgnoreRulesConfig.from_env()

    registry = SchemaRegistry(
        protected_types=config.protected_resource_types,
        source=provider if callable(getattr(provider, "get_schema", None)) else None,
    )

    document = load_declarations(config.declarations_path)
    graph = build(document, registry)
    resolve(graph)

    store = StateStore.load(config.state_path)

    fetcher = fetcher or ExternalDataFetcher(config.retry)
    external_values = await fetcher.fetch_all(
        graph.external, graph.referenced_external_sources()
    )

    planner = Planner(registry, IgnoreRulesEvaluator(ignore_rules), guardrails)
    plan = planner.plan(graph, store.snapshot(), external_values)
    return Cycle(config, graph, plan, store, provider, planner, guardrails)


async def run_plan(
    config: Config,
    provider: Provider | None = None,
    fetcher: ExternalDataFetcher | None = None,
    ignore_rules: IgnoreRulesConfig | None = None,
    guardrails: GuardrailEnforcer | None = None,
) -> ExecutionPlan:
    """Build and return the execution plan without applying it."""
    started = time.monotonic()
    provenance_logger = get_provenance_logger()
    provenance = provenance_logger.create_provenance(
        command="plan",
        provider=config.provider,
        declarations_path=str(config.declarations_path),
        state_path=str(config.state_path),
    )
    try:
        cycle = await prepare_cycle(config, provider, fetcher, ignore_rules, guardrails)
    except Exception as e:
        provenance.error = str(e)
        provenance.error_type = type(e).__name__
        raise
    else:
        provenance.change_summary = ChangeProvenanceSummary.from_counts(cycle.plan.counts())
        provenance.state_serial = cycle.store.serial
        return cycle.plan
    finally:
        provenance.duration_seconds = time.monotonic() - started
        provenance_logger.log_provenance(provenance)


async def run_apply(
    config: Config,
    on_plan: Callable[[ExecutionPlan], None] | None = None,
    provider: Provider | None = None,
    fetcher: ExternalDataFetcher | None = None,
    ignore_rules: IgnoreRulesConfig | None = None,
    guardrails: GuardrailEnforcer | None = None,
) -> tuple[ExecutionPlan, ApplyResult]:
    """Plan and apply one cycle.

    SIGINT and SIGTERM abort the apply: resources not yet started are
    cancelled while in-flight provider calls finish.

    Args:
        config: Engine configuration.
        on_plan: Optional callable receiving the plan before it is applied.
        provider, fetcher, ignore_rules, guardrails: Collaborator overrides
            passed to prepare_cycle.

    Raises:
        Everything prepare_cycle raises, plus KillSwitchActive and
        ChangeLimitExceeded from the guardrails.
    """
    started = time.monotonic()
    provenance_logger = get_provenance_logger()
    provenance = provenance_logger.create_provenance(
        command="apply",
        provider=config.provider,
        declarations_path=str(config.declarations_path),
        state_path=str(config.state_path),
    )

    try:
        cycle = await prepare_cycle(config, provider, fetcher, ignore_rules, guardrails)
        if on_plan is not None:
            on_plan(cycle.plan)

        reconciler = Reconciler(
            cycle.provider,
            config=config,
            planner=cycle.planner,
            guardrails=cycle.guardrails,
        )
        installed = _install_signal_handlers(reconciler)
        try:
            result = await reconciler.apply(cycle.plan, cycle.store)
        finally:
            _remove_signal_handlers(installed)
    except Exception as e:
        provenance.error = str(e)
        provenance.error_type = type(e).__name__
        raise
    else:
        provenance.change_summary = ChangeProvenanceSummary.from_counts(result.counts())
        provenance.failed = [str(a) for a in result.failed]
        provenance.aborted = result.aborted
        provenance.state_serial = cycle.store.serial
        return cycle.plan, result
    finally:
        provenance.duration_seconds = time.monotonic() - started
        provenance_logger.log_provenance(provenance)


def _install_signal_handlers(reconciler: Reconciler) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.warning("Received signal, aborting apply", extra={"signal": sig.name})
        reconciler.abort()

    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable", extra={"signal": sig.name})
            continue
        installed.append(sig)
    return installed


def _remove_signal_handlers(installed: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)
