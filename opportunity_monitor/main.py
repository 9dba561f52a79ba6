from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from .config import ConfigError, load_config
from .runner import AlertRunner

log = logging.getLogger("main")


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _install_signal_handlers(runner: AlertRunner) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.request_stop)
        except (NotImplementedError, RuntimeError):
            # not available on this platform; KeyboardInterrupt still ends the run
            pass


async def _run_forever(runner: AlertRunner) -> int:
    _install_signal_handlers(runner)
    try:
        await runner.run_forever()
    finally:
        await runner.stop()
    return 0


async def _run_once(runner: AlertRunner) -> int:
    try:
        report = await runner.run_cycle()
    finally:
        await runner.stop()
    print(json.dumps(report.to_dict(), indent=2))
    return 0


async def _test_notification(runner: AlertRunner) -> int:
    try:
        ok = await runner.send_test_notification()
    finally:
        await runner.stop()
    log.info("test_notification ok=%s", ok)
    return 0 if ok else 1


async def _check(runner: AlertRunner) -> int:
    try:
        exchange_ok, latency_ms = await runner.fetcher.ping()
        email_ok = await runner.dispatcher.test_connectivity()
    finally:
        await runner.stop()
    log.info("check exchange=%s latency_ms=%s email=%s", exchange_ok, latency_ms, email_ok)
    print(json.dumps({"config": True, "exchange": exchange_ok, "latency_ms": latency_ms, "email": email_ok}))
    return 0 if exchange_ok else 1


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Opportunity Monitor - crypto futures opportunity alerts")
    p.add_argument("--config", default=None, help="Path to YAML config (environment variables override it)")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single cycle and print the report as JSON")
    mode.add_argument("--test-notification", action="store_true", help="Send a test email and exit")
    mode.add_argument("--check", action="store_true", help="Validate config and test connectivity")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (ConfigError, OSError) as e:
        _setup_logging("INFO")
        log.error("config_error err=%s", e)
        return 2
    _setup_logging(cfg.app.log_level)

    runner = AlertRunner(cfg)
    if args.once:
        job = _run_once(runner)
    elif args.test_notification:
        job = _test_notification(runner)
    elif args.check:
        job = _check(runner)
    else:
        job = _run_forever(runner)

    try:
        return asyncio.run(job)
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        log.exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
