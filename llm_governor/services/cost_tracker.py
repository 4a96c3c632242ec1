"""
Cost Tracker
============
Session spend accounting, budget checks and the append-only usage log.
"""

import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import structlog

from llm_governor import metrics
from llm_governor.core.pricing import PricingTable, format_cost
from llm_governor.errors import BudgetExceededError
from llm_governor.schemas.usage import (
    Budget,
    BudgetCheck,
    ModelCostSummary,
    SessionStats,
    UsageRecord,
)

logger = structlog.get_logger()

AFFORDABLE_MODELS = "google/gemini-2.0-flash-exp or deepseek/deepseek-chat-v3"
MANY_REQUESTS_THRESHOLD = 20
HIGH_AVERAGE_TOKENS = 50_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CostTracker:
    """
    Tracks token usage and spend for one session.

    Every tracked call is appended to the session, counted in Prometheus and
    written as one JSON line to the usage log. Log writes run in the default
    executor and never block or fail the caller.
    """

    def __init__(
        self,
        pricing: PricingTable,
        budget: Budget | None = None,
        log_path: Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.pricing = pricing
        self.budget = budget or Budget()
        self.log_path = log_path
        self._clock = clock
        self._stats = SessionStats(session_start=clock())
        self._warning_issued = False
        self._pending: set[asyncio.Future[None]] = set()

        if log_path is not None:
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning("Failed to create usage log directory", path=str(log_path.parent), error=str(e))

    def track_request(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        operation: str = "chat",
    ) -> UsageRecord:
        """
        Track a completed backend call.

        Args:
            model: Model that served the call
            prompt_tokens: Input tokens
            completion_tokens: Output tokens
            operation: Free-form tag, e.g. "chat" or "tool-call"

        Returns:
            The appended usage record
        """
        total_tokens = prompt_tokens + completion_tokens
        cost = self.pricing.cost(model, prompt_tokens, completion_tokens)

        record = UsageRecord(
            timestamp=self._clock(),
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            cost=cost,
            operation=operation,
        )

        stats = self._stats
        stats.total_cost += cost
        stats.total_tokens += total_tokens
        stats.request_count += 1
        stats.records.append(record)

        metrics.TRACKED_COST.labels(model=model).inc(float(cost))
        metrics.TRACKED_TOKENS.labels(model=model, direction="prompt").inc(prompt_tokens)
        metrics.TRACKED_TOKENS.labels(model=model, direction="completion").inc(completion_tokens)

        logger.info(
            "Tracked request",
            model=model,
            operation=operation,
            tokens=total_tokens,
            cost=float(cost),
            session_cost=float(stats.total_cost),
        )

        self._schedule_log_write(record)
        self._check_budget_warning()
        return record

    def _schedule_log_write(self, record: UsageRecord) -> None:
        if self.log_path is None:
            return

        line = json.dumps(record.model_dump(mode="json")) + "\n"
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._append_line(line)
            return

        future = loop.run_in_executor(None, self._append_line, line)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def _append_line(self, line: str) -> None:
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.warning("Failed to write usage log", path=str(self.log_path), error=str(e))

    async def flush(self) -> None:
        """Wait for pending usage log writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _check_budget_warning(self) -> None:
        if self._warning_issued or not self.budget.session_limit:
            return

        fraction = self._stats.total_cost / self.budget.session_limit
        if fraction >= Decimal(str(self.budget.warning_threshold)):
            self._warning_issued = True
            logger.warning(
                "Session budget warning",
                spent=format_cost(self._stats.total_cost),
                limit=format_cost(self.budget.session_limit),
                percent=round(float(fraction) * 100),
            )

    @property
    def warning_issued(self) -> bool:
        return self._warning_issued

    def _window_cost(self, since: datetime) -> Decimal:
        return sum(
            (r.cost for r in self._stats.records if r.timestamp > since),
            Decimal("0"),
        )

    def would_exceed_budget(self, estimated_cost: Decimal | float) -> BudgetCheck:
        """
        Check whether a call of the given cost would pass any budget.

        Windows are checked in order session, hourly, daily; the first
        violated one is reported. Unset limits are skipped.
        """
        estimated = Decimal(str(estimated_cost))
        now = self._clock()
        budget = self.budget

        windows: list[tuple[str, Decimal | None, Callable[[], Decimal]]] = [
            ("session", budget.session_limit, lambda: self._stats.total_cost),
            ("hourly", budget.hourly_limit, lambda: self._window_cost(now - timedelta(hours=1))),
            ("daily", budget.daily_limit, lambda: self._window_cost(now - timedelta(days=1))),
        ]

        for window, limit, spent in windows:
            if not limit:
                continue
            current = spent()
            if current + estimated > limit:
                return BudgetCheck(
                    would_exceed=True,
                    reason=window,
                    current_cost=current,
                    limit=limit,
                    overage=current + estimated - limit,
                )

        return BudgetCheck(
            would_exceed=False,
            current_cost=self._stats.total_cost,
            limit=budget.session_limit or Decimal("0"),
        )

    def ensure_within_budget(self, estimated_cost: Decimal | float) -> None:
        """
        Raise if a call of the given cost would pass any budget.

        Raises:
            BudgetExceededError: With the violated window and current spend
        """
        check = self.would_exceed_budget(estimated_cost)
        if check.would_exceed:
            raise BudgetExceededError(
                window=check.reason or "session",
                current_cost=check.current_cost,
                limit=check.limit,
                estimated_cost=Decimal(str(estimated_cost)),
            )

    def recommendations(self) -> list[str]:
        """Suggestions for reducing spend, based on the session so far."""
        stats = self._stats
        if stats.request_count == 0:
            return []

        tips = []
        expensive = sum(1 for r in stats.records if self.pricing.is_expensive(r.model))
        if expensive > stats.request_count * 0.5:
            tips.append(f"Consider using more affordable models like {AFFORDABLE_MODELS}")

        if stats.request_count > MANY_REQUESTS_THRESHOLD:
            tips.append(
                "You're making many API requests. Consider batching operations "
                "or using context more efficiently"
            )

        if stats.total_tokens / stats.request_count > HIGH_AVERAGE_TOKENS:
            tips.append("High token usage detected. Consider compressing the conversation context")

        return tips

    def session_stats(self) -> SessionStats:
        """Snapshot of the session; mutating it does not affect the tracker."""
        return self._stats.model_copy(update={"records": list(self._stats.records)})

    def costs_by_model(self) -> list[ModelCostSummary]:
        """Per-model rollup in first-use order."""
        rollup: dict[str, ModelCostSummary] = {}
        for record in self._stats.records:
            summary = rollup.get(record.model)
            if summary is None:
                rollup[record.model] = ModelCostSummary(
                    model=record.model,
                    cost=record.cost,
                    tokens=record.total_tokens,
                    requests=1,
                )
            else:
                summary.cost += record.cost
                summary.tokens += record.total_tokens
                summary.requests += 1
        return list(rollup.values())

    def format_summary(self) -> str:
        """Human-readable session summary."""
        stats = self._stats
        minutes = int((self._clock() - stats.session_start).total_seconds() // 60)
        rule = "-" * 40

        lines = [
            "Session Cost Summary",
            rule,
            f"Session Duration: {minutes} minutes",
            f"Total Requests: {stats.request_count}",
            f"Total Tokens: {stats.total_tokens:,}",
            f"Total Cost: {format_cost(stats.total_cost)}",
        ]

        if self.budget.session_limit:
            percent = stats.total_cost / self.budget.session_limit * 100
            lines.append(f"Budget Used: {percent:.1f}% of {format_cost(self.budget.session_limit)}")

        by_model = self.costs_by_model()
        if by_model:
            lines.append("")
            lines.append("Cost by Model:")
            for summary in by_model:
                name = summary.model.rsplit("/", 1)[-1]
                lines.append(
                    f"  - {name}: {format_cost(summary.cost)} "
                    f"({summary.requests} requests, {summary.tokens:,} tokens)"
                )

        lines.append(rule)
        return "\n".join(lines)

    def reset(self) -> None:
        """Start a new session."""
        self._stats = SessionStats(session_start=self._clock())
        self._warning_issued = False
        logger.info("Cost tracker session reset")
