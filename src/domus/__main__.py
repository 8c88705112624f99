"""
Main entrypoint: runs the sync scheduler, or a single command.

The local control API runs separately under uvicorn.

Usage:
    python -m domus setup           # one-time household session setup
    python -m domus sync [--full]   # run one sync cycle now
    python -m domus status          # print watermark, pending changes, last cycle
    python -m domus reset           # forget the watermark (next sync is a full resync)
    python -m domus                 # auto-sync loop (interval + after local changes)
    uvicorn domus.api.main:app --host 127.0.0.1 --port 8000  # starts API
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from domus.scripts.setup import run_setup
    run_setup()


async def _run_once(full: bool) -> int:
    from domus.sync.orchestrator import build_orchestrator

    orchestrator = build_orchestrator()

    def show(progress) -> None:
        logger.info("[%3s%%] %s", progress.percent if progress.percent is not None else "-", progress.message)

    try:
        result = await orchestrator.perform_sync(force_full_sync=full, on_progress=show)
    finally:
        await orchestrator.aclose()

    if result.success:
        print(f"Sync complete: pushed={result.pushed} pulled={result.pulled} conflicts={result.conflicts}")
        return 0
    print(f"Sync failed: {result.error}")
    return 1


def _show_status() -> int:
    from domus.clock import format_timestamp
    from domus.sync.orchestrator import build_orchestrator, latest_sync_log

    orchestrator = build_orchestrator()
    status = orchestrator.get_status()
    log = latest_sync_log(orchestrator.engine)

    print(f"Last sync:        {format_timestamp(status.last_sync_at) if status.last_sync_at else 'never'}")
    print(f"Pending changes:  {status.pending_changes}")
    print(f"Needs migration:  {'yes' if status.needs_migration else 'no'}")
    print(f"Session saved:    {'yes' if orchestrator.auth.has_session() else 'no'}")
    if log:
        print(
            f"Last cycle:       {log.status} at {log.started_at:%Y-%m-%d %H:%M:%S} UTC "
            f"(pushed={log.pushed} pulled={log.pulled})"
        )
        if log.error_message:
            print(f"Last error:       {log.error_message}")
    return 0


def _reset() -> int:
    from domus.sync.orchestrator import build_orchestrator

    build_orchestrator().reset_sync_state()
    print("Sync state cleared. The next sync will be a full resync.")
    return 0


async def _run_scheduler() -> None:
    from domus.config import get_settings
    from domus.scheduler.jobs import build_scheduler, request_sync, watch_local_changes
    from domus.sync.orchestrator import build_orchestrator

    settings = get_settings()
    orchestrator = build_orchestrator()

    if not orchestrator.auth.has_session():
        logger.error("No household session found. Run `python -m domus setup` first.")
        sys.exit(1)

    scheduler = build_scheduler(orchestrator)
    watch_local_changes(scheduler, orchestrator)
    scheduler.start()
    request_sync(scheduler, orchestrator, delay=0)
    logger.info(
        "Scheduler started (auto-sync every %d min, %.0fs after local changes)",
        settings.auto_sync_interval_minutes,
        settings.sync_debounce_seconds,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await orchestrator.aclose()
        logger.info("Goodbye.")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="domus", description="Household sync engine")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("setup", help="Save the household session")
    sync_parser = sub.add_parser("sync", help="Run one sync cycle")
    sync_parser.add_argument(
        "--full", action="store_true", help="Ignore the watermark and resync everything"
    )
    sub.add_parser("status", help="Show sync status")
    sub.add_parser("reset", help="Clear the sync watermark")
    args = parser.parse_args(argv)

    if args.command == "setup":
        _run_setup()
        return 0
    if args.command == "sync":
        return asyncio.run(_run_once(args.full))
    if args.command == "status":
        return _show_status()
    if args.command == "reset":
        return _reset()
    asyncio.run(_run_scheduler())
    return 0


if __name__ == "__main__":
    sys.exit(main())
