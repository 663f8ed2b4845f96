"""
Step runner shared by the connectors.

A connector sync is a list of named steps, one per remote resource. Steps
fail independently; only a credential failure stops the remaining steps.
"""
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Sequence, Tuple

from bizpulse.errors import CredentialError, error_kind
from bizpulse.schemas import DateRange, StepStats, SyncResult
from bizpulse.utils.helpers import floor_to_day, to_naive_utc, utcnow
from bizpulse.utils.logger import log

SyncStep = Callable[[StepStats], Awaitable[None]]


def resolve_window_start(
    since: Optional[datetime],
    initial_window_days: int,
    now: Optional[datetime] = None
) -> datetime:
    """
    Start of the sync window, floored to midnight.

    Flooring means every day the window touches is refetched in full, so a
    replace-mode upsert never overwrites a day with partial data.
    """
    if since is None:
        since = (now or utcnow()) - timedelta(days=initial_window_days)
    return floor_to_day(to_naive_utc(since))


def write_window(
    metric_store,
    accumulator,
    stats: StepStats,
    window_start: datetime,
    metric_types: Sequence[str],
    now: Optional[datetime] = None,
):
    """
    Write one bulk step's points for the days from window_start to today.

    A complete fetch replaces the whole window, so a day whose records all
    went away (voided orders, deleted customers) drops to zero. A truncated
    fetch saw only part of some days and folds in what it has.
    """
    points = accumulator.points()
    stats.points_written += metric_store.upsert_data_points(points, merge=stats.truncated)
    if stats.truncated:
        return

    window = DateRange(window_start.date(), (now or utcnow()).date() + timedelta(days=1))
    stats.points_written += metric_store.clear_missing(
        accumulator.integration_id, metric_types, window, [point.key for point in points]
    )


async def run_sync_steps(
    platform: str,
    integration,
    steps: Sequence[Tuple[str, SyncStep]],
    primary_step: Optional[str],
    window_start: Optional[datetime],
) -> SyncResult:
    result = SyncResult(
        integration_id=integration.id,
        platform=platform,
        primary_step=primary_step,
        window_start=window_start,
        started_at=utcnow(),
    )
    failures: Dict[str, Exception] = {}

    for name, step in steps:
        stats = StepStats()
        result.steps[name] = stats
        try:
            await step(stats)
            log.info(
                f"{platform} {name} synced for integration {integration.id}: "
                f"{stats.fetched} fetched, {stats.points_written} points written, "
                f"{stats.skipped} skipped, {stats.invalid} invalid"
                + (" (truncated at record cap)" if stats.truncated else "")
            )
        except CredentialError as e:
            failures[name] = e
            result.step_errors[name] = str(e)
            log.error(f"{platform} credentials rejected for integration {integration.id}: {e}")
            break
        except Exception as e:
            failures[name] = e
            result.step_errors[name] = f"{type(e).__name__}: {e}"
            log.error(f"{platform} {name} step failed for integration {integration.id}: {e}")

    credential_failure = next((e for e in failures.values() if isinstance(e, CredentialError)), None)
    if credential_failure is not None:
        result.error = str(credential_failure)
        result.error_kind = credential_failure.kind
    elif result.primary_failed:
        primary_error = failures[primary_step]
        result.error = result.step_errors[primary_step]
        result.error_kind = error_kind(primary_error)

    result.success = result.error is None
    result.finished_at = utcnow()
    return result
