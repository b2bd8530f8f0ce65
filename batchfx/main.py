from __future__ import annotations

import argparse
import signal
import threading
from typing import Any, Sequence

from batchfx.application.batch_scheduler import run_pipeline
from batchfx.config import load_pipeline_config
from batchfx.config.log_config import apply_log_config
from batchfx.core.errors import EXIT_USAGE, ConfigurationError, PipelineError
from batchfx.core.inference_engine import InferenceEngine
from batchfx.infrastructure.engine_factory import build_engine
from batchfx.infrastructure.video_stream_builder import build_video_streams
from logger.filtered_logger import (
    LogChannel,
    close_logger,
    fatal as log_fatal,
    info as log_info,
    warning as log_warning,
)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="batchfx",
        description="Run several input videos through one batched video effect, writing one output per input.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("inputs", nargs="+", metavar="inFile", help="Input video files; all must share one resolution.")
    p.add_argument(
        "--out_file",
        default=None,
        metavar="PATTERN",
        help="Output file name pattern, e.g. \"BatchOut_%%02u.mp4\"; a name without %% gets _%%02u before its extension.",
    )
    p.add_argument("--mode", type=int, choices=(0, 1), default=None, help="Effect mode: 0 = quality, 1 = performance.")
    p.add_argument("--device", default=None, help="Torch device for the engine: auto, cpu, cuda or cuda:N.")
    p.add_argument("--codec", default=None, help="FOURCC code for the output videos.")
    p.add_argument("--config", default=None, metavar="FILE", help="YAML file merged over the shipped pipeline config.")
    p.add_argument("--log", default=None, metavar="FILE", help="Log destination: stdout, stderr, a file path, or \"\" for none.")
    p.add_argument(
        "--log_level",
        type=int,
        choices=(0, 1, 2, 3),
        default=None,
        help="Log level: 0 = fatal, 1 = error, 2 = warning, 3 = info.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging of scheduler decisions.")
    p.add_argument(
        "--release_flush",
        action="store_true",
        default=None,
        help="Deallocate a stream's state when it is exhausted and flush it with its last dispatch.",
    )
    p.add_argument("--pull_workers", type=int, default=None, help="Threads used to pull frames each cycle (0 = sequential).")
    return p.parse_args(argv)


def _apply_cli_overrides(config: dict[str, Any], args: argparse.Namespace) -> dict[str, Any]:
    engine = config.setdefault("engine", {})
    scheduler = config.setdefault("scheduler", {})
    output = config.setdefault("output", {})
    if args.mode is not None:
        engine["mode"] = args.mode
    if args.device is not None:
        engine["device"] = args.device
    if args.release_flush:
        engine["release_flush"] = True
    if args.pull_workers is not None:
        scheduler["pull_workers"] = args.pull_workers
    if args.codec is not None:
        output["codec"] = args.codec
    if args.out_file is not None:
        output["pattern"] = args.out_file
    return config


def _install_sigint_handler(cancel_event: threading.Event):
    if threading.current_thread() is not threading.main_thread():
        return None

    def _on_sigint(signum, frame):
        if cancel_event.is_set():
            log_warning(LogChannel.GLOBAL, "Cancellation already in progress")
            return
        log_info(LogChannel.GLOBAL, "Interrupt received; finishing the current cycle and draining")
        cancel_event.set()

    return signal.signal(signal.SIGINT, _on_sigint)


def main(argv: Sequence[str] | None = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        return EXIT_USAGE if exc.code else 0

    apply_log_config({"level": args.log_level, "file": args.log, "verbose": args.verbose})
    engine: InferenceEngine | None = None
    cancel_event = threading.Event()
    previous_handler = _install_sigint_handler(cancel_event)
    try:
        try:
            config = load_pipeline_config(args.config)
        except FileNotFoundError as exc:
            raise ConfigurationError(str(exc)) from exc
        config = _apply_cli_overrides(config, args)
        scheduler_options = config.get("scheduler", {}) or {}
        engine = build_engine(config, max_batch_size=len(args.inputs))
        streams = build_video_streams(args.inputs, config.get("output", {}) or {})
        summary = run_pipeline(
            streams,
            engine,
            pull_workers=int(scheduler_options.get("pull_workers") or 0),
            cancel_event=cancel_event,
            max_cycles=scheduler_options.get("max_cycles"),
        )
        return summary.exit_code
    except PipelineError as exc:
        log_fatal(LogChannel.GLOBAL, f"Error: {exc}")
        return exc.exit_code
    finally:
        if engine is not None:
            engine.close()
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)
        close_logger()


if __name__ == "__main__":
    raise SystemExit(main())
