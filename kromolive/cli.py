from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Iterable

from rich.console import Console

from .audio import analyze_audio_content, write_wav
from .config import DEFAULT_DURATION, DEFAULT_PITCH, DEFAULT_VELOCITY, EngineSettings, parse_source
from .fetcher import HttpAudioFetcher
from .logging_utils import configure_logging, get_log_path, log_exception
from .spinner import Spinner, render_error

_LOGGER = logging.getLogger("kromolive.cli")
_CONSOLE = Console()


def _report(lines: Iterable[str]) -> None:
    for line in lines:
        _CONSOLE.print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kromolive")
    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="Fetch a rendered genome and write it as WAV.")
    render.add_argument("run_id", type=str)
    render.add_argument("genome_id", type=str)
    render.add_argument("--duration", type=float, default=DEFAULT_DURATION)
    render.add_argument("--pitch", type=float, default=DEFAULT_PITCH)
    render.add_argument("--velocity", type=float, default=DEFAULT_VELOCITY)
    render.add_argument("--output", type=str, default=None)

    sub.add_parser("doctor", help="Print effective settings and the log location.")
    return parser


async def _render(settings: EngineSettings, args: argparse.Namespace) -> Path:
    source = parse_source(
        {
            "source_id": args.genome_id,
            "run_id": args.run_id,
            "duration": args.duration,
            "pitch": args.pitch,
            "velocity": args.velocity,
        }
    )
    output = Path(args.output) if args.output else Path(f"{source.cache_key}.wav")
    fetcher = HttpAudioFetcher(settings)
    try:
        with Spinner(f"Rendering {source.cache_key}"):
            audio = await fetcher.render(source)
    finally:
        await fetcher.aclose()
    analysis = analyze_audio_content(audio, epsilon=settings.silence_epsilon)
    if not analysis.contains_sound:
        _LOGGER.warning("Rendered %s is silent", source.cache_key)
    path = write_wav(output, audio)
    _CONSOLE.print(
        f"Wrote {path} ({audio.duration:.2f}s, {audio.sample_rate} Hz, signal {analysis.signal_strength})"
    )
    return path


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        settings = EngineSettings.from_env()

        if args.command == "render":
            asyncio.run(_render(settings, args))
            return 0

        if args.command == "doctor":
            _report(
                [
                    f"REST host: {settings.rest_host}",
                    f"Static host: {settings.static_host}",
                    f"HTTP timeout: {settings.http_timeout:g}s",
                    f"Registration timeout: {settings.registration_timeout:g}s",
                    f"Log file: {get_log_path()}",
                    "Hints:",
                    "- Set KROMOLIVE_REST_HOST / KROMOLIVE_STATIC_HOST to point at another render server.",
                    "- Set KROMOLIVE_DEBUG=1 for verbose console logging.",
                ]
            )
            return 0

        parser.print_help()
        return 1
    except Exception as exc:
        debug = bool(os.environ.get("KROMOLIVE_DEBUG"))
        _LOGGER.warning("kromolive CLI failed: %s", exc, exc_info=debug)
        log_exception("kromolive CLI", exc)
        render_error("kromolive CLI", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
