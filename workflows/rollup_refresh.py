"""
Prefect Workflow Orchestration - Rollup Refresh

Scheduled rollup maintenance:
- Nightly refresh of yesterday through every level
- Ad-hoc rebuilds of an arbitrary range and depth
- Roll-up consistency checks and freshness alerts
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from prefect import flow, task, get_run_logger

from sales_rollups.config.logging import configure_logging, start_metrics_server
from sales_rollups.engine import RollupEngine


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="rebuild_rollups",
    description="Rebuild rollups stage by stage for a date range",
    retries=1,
    retry_delay_seconds=300,
)
async def rebuild_rollups(
    engine: RollupEngine,
    start: date,
    end: date,
    depth: Optional[str] = None,
) -> Dict[str, Any]:
    """Run the staged rebuild inline and return its final progress"""
    logger = get_run_logger()

    result = await engine.orchestrator.run(start, end, depth)

    logger.info(
        f"Rebuild {result['run_id']} {result['status']}: "
        f"{result['units_succeeded']} units succeeded, {result['units_failed']} failed, "
        f"{result['records_written']} records written"
    )
    return result


@task(
    name="validate_rollups",
    description="Check that built periods agree with their finer level",
    retries=2,
    retry_delay_seconds=30,
)
async def validate_rollups(engine: RollupEngine, as_of: date) -> List[Dict[str, Any]]:
    """Validate the daily, monthly and yearly periods containing as_of"""
    logger = get_run_logger()

    reports: List[Dict[str, Any]] = []
    for granularity in ("daily", "monthly", "yearly"):
        reports.extend(await engine.validate_rollup(granularity, as_of))

    invalid = [r for r in reports if not r["is_valid"]]
    logger.info(f"Validation complete: {len(reports) - len(invalid)}/{len(reports)} reports valid")
    return reports


@task(
    name="rollup_health",
    description="Record counts and daily freshness",
    retries=2,
    retry_delay_seconds=30,
)
async def rollup_health(engine: RollupEngine, as_of: date) -> Dict[str, Any]:
    logger = get_run_logger()
    health = await engine.check_health(as_of)
    logger.info(f"Rollup health as of {as_of}: healthy={health['healthy']}")
    return health


@task(
    name="send_alert",
    description="Send alert notification",
)
async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "info",
) -> None:
    """Send alert notification"""
    logger = get_run_logger()
    logger.warning(f"[{severity.upper()}] {alert_type}: {message}")


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="nightly_rollup_refresh",
    description="Rebuild yesterday's rollups through every level",
)
async def nightly_rollup_refresh(process_date: Optional[date] = None) -> Dict[str, Any]:
    """
    Nightly rollup refresh.

    Steps:
    1. Rebuild the process date from hourly up to yearly
    2. Validate the periods containing it
    3. Check freshness and alert on failures
    """
    logger = get_run_logger()
    configure_logging()

    process_date = process_date or date.today() - timedelta(days=1)
    logger.info(f"Starting nightly rollup refresh for {process_date}")

    engine = await RollupEngine.connect()
    results: Dict[str, Any] = {"process_date": process_date.isoformat(), "steps": {}}
    try:
        rebuild = await rebuild_rollups(engine, process_date, process_date)
        results["steps"]["rebuild"] = rebuild

        reports = await validate_rollups(engine, process_date)
        results["steps"]["validation"] = reports

        health = await rollup_health(engine, process_date + timedelta(days=1))
        results["steps"]["health"] = health

        if rebuild["units_failed"]:
            await send_alert(
                alert_type="Rollup Units Failed",
                message=f"{rebuild['units_failed']} units failed for {process_date}",
                severity="warning",
            )
        if any(not r["is_valid"] for r in reports):
            await send_alert(
                alert_type="Rollup Validation Failed",
                message=f"Roll-up mismatches detected for {process_date}",
                severity="warning",
            )
        if not health["healthy"]:
            await send_alert(
                alert_type="Rollups Stale",
                message=f"No daily rollups for {process_date}",
                severity="critical",
            )

        results["status"] = "success"

    except Exception as e:
        logger.error(f"Nightly rollup refresh failed: {e}")

        await send_alert(
            alert_type="Rollup Refresh Failed",
            message=f"Nightly rollup refresh failed: {e}",
            severity="critical",
        )

        results["status"] = "failed"
        results["error"] = str(e)
        raise
    finally:
        await engine.close()

    return results


@flow(
    name="rollup_rebuild",
    description="Rebuild an arbitrary range up to a depth",
)
async def rollup_rebuild(start: date, end: date, depth: str = "yearly") -> Dict[str, Any]:
    """Ad-hoc rebuild, e.g. after a source backfill"""
    logger = get_run_logger()
    configure_logging()

    logger.info(f"Starting rollup rebuild {start}..{end} up to {depth}")
    engine = await RollupEngine.connect()
    try:
        return await rebuild_rollups(engine, start, end, depth)
    finally:
        await engine.close()


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    start_metrics_server()
    asyncio.run(nightly_rollup_refresh())
