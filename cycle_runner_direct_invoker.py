import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from cycle_models import ConfigError, CycleConfig, configure_logging, load_cycle_config, logger
from cycle_runner import CycleRunner, RunStatistics

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run CycleRunner locally for a config file")
    parser.add_argument("config_file", help="Path to the cycle configuration (JSON or YAML)")
    parser.add_argument("debug_level", nargs="?", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    parser.add_argument(
        "--max-cycles",
        dest="max_cycles",
        type=int,
        default=None,
        help="Override max_requests from the config file",
    )
    return parser.parse_args(argv)


def load_config_file(path) -> Dict[str, Any]:
    """Read a .json, .yaml or .yml config file into a dict. Raises ConfigError."""
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file '{config_path}': {e}") from e

    try:
        if config_path.suffix.lower() in (".yaml", ".yml"):
            data = YAML(typ="safe").load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, YAMLError) as e:
        raise ConfigError(f"Cannot parse configuration file '{config_path}': {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file '{config_path}' must contain a mapping at the top level")
    return data


def resolve_log_level(name: str) -> int:
    level = getattr(logging, name.upper(), None)
    if not isinstance(level, int):
        logger.warning(f"Unknown debug level '{name}', using INFO.")
        return logging.INFO
    return level


def build_config(args: argparse.Namespace) -> CycleConfig:
    data = load_config_file(args.config_file)
    if resolve_log_level(args.debug_level) <= logging.DEBUG:
        data["debug"] = True
    if args.max_cycles is not None:
        data.pop("max_requests", None)
        data["max_cycles"] = args.max_cycles
    return load_cycle_config(data)


async def run_cycles(cfg: CycleConfig, log_level: int = logging.INFO) -> RunStatistics:
    runner = CycleRunner(cfg)
    # CycleRunner resets the logger to DEBUG/INFO from cfg.debug.
    configure_logging(cfg.debug, log_level)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: _request_stop(runner, s))
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable off the main thread and on Windows.
            logger.debug(f"Cannot install handler for {sig.name}; relying on KeyboardInterrupt.")
    try:
        return await runner.start_generating()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


def _request_stop(runner: CycleRunner, sig: signal.Signals):
    logger.info(f"Received signal {sig.name}; stopping after in-flight requests finish.")
    asyncio.ensure_future(runner.stop_generating())


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        cfg = build_config(args)
    except ConfigError as e:
        logger.critical(str(e))
        return EXIT_CONFIG_ERROR

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_cycles(cfg, resolve_log_level(args.debug_level)))
    except KeyboardInterrupt:
        print("Stopping CycleRunner...")
        loop.run_until_complete(asyncio.sleep(0))
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
