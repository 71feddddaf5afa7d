"""
Command-Line Interface for narration-ms.

Narrates texts without running the HTTP server. Audio is not played:
each clip Polly returns is written to the output directory through the
file sink device, passing through the same admission, backlog and breaker
logic the server uses.

Usage Examples:
    # Single text
    narration-ms --text "The goblin king has fallen." --out out/

    # Positional text (same as above)
    narration-ms "The goblin king has fallen."

    # Batch from file (one line = one narration)
    narration-ms --file lines.txt --out out/

    # Dry-run mode (no AWS call, shows truncation and previews)
    narration-ms --text "Test" --dry-run --json

    # Show manager status (client, breaker, settings)
    narration-ms --status

Environment Variables:
    AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: Polly credentials
    AWS_REGION: Polly region
    NARRATION_MS_VOICE: Voice override
    NARRATION_MS_SETTINGS: Settings file (default config/settings.yaml)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from narration_ms.core.config import Settings, apply_env_overrides, load_settings
from narration_ms.core.logging import configure_logging, get_logger, info, set_request_id
from narration_ms.narration.errors import InvalidInputError
from narration_ms.narration.result import SpeakStatus
from narration_ms.utils.text import prepare_text, preview


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="narration-ms CLI (Polly narration to files)")

    parser.add_argument("text_pos", nargs="?", help="Text to narrate (positional)")
    parser.add_argument("--text", help="Text to narrate")
    parser.add_argument("--file", help="Batch input file (1 line = 1 narration)")

    parser.add_argument("--out", default="out", help="Output directory for audio files")
    parser.add_argument("--settings", help="Settings file (default: $NARRATION_MS_SETTINGS or config/settings.yaml)")
    parser.add_argument("--voice", help="Voice override")

    parser.add_argument("--dry-run", action="store_true",
                        help="Validate and summarize without calling Polly")
    parser.add_argument("--status", action="store_true",
                        help="Print manager status and exit")
    parser.add_argument("--json", action="store_true",
                        help="Print JSON summary")

    return parser.parse_args(argv)


def _load_texts(args: argparse.Namespace) -> List[str]:
    """
    Load input texts from arguments or file.

    Raises:
        SystemExit: If no input provided or conflicting options used.
    """
    text = args.text or args.text_pos

    if args.file:
        if text:
            raise SystemExit("Use --file without --text or positional text.")
        lines = Path(args.file).read_text(encoding="utf-8").splitlines()
        items = [line.strip() for line in lines if line.strip()]
        if not items:
            raise SystemExit("Input file is empty.")
        return items

    if not text:
        raise SystemExit("Provide --text or a positional text.")
    return [text]


def _load_cli_settings(args: argparse.Namespace) -> Settings:
    path = args.settings or os.getenv("NARRATION_MS_SETTINGS", "config/settings.yaml")
    try:
        settings = load_settings(path)
    except FileNotFoundError:
        if args.settings:
            raise SystemExit(f"Settings file not found: {path}")
        settings = Settings(raw=apply_env_overrides({}))

    if args.voice:
        raw = dict(settings.raw)
        raw["polly"] = {**(raw.get("polly") or {}), "voice_id": args.voice}
        settings = Settings(raw=raw)
    return settings


def _summary_for_text(text: str, max_length: int, preview_chars: int) -> Dict[str, Any]:
    """Validate one text the way speak() would, without synthesis."""
    try:
        prepared = prepare_text(text, max_length)
    except InvalidInputError as e:
        return {"ok": False, "error": e.kind, "message": e.message}
    return {
        "ok": True,
        "text_len": prepared.original_length,
        "sent_len": len(prepared.text),
        "truncated": prepared.truncated,
        "preview": preview(prepared.text, preview_chars),
    }


async def _narrate(settings: Settings, texts: List[str], out_dir: Path) -> Dict[str, Any]:
    """Run every text through a NarrationManager backed by a file sink."""
    from narration_ms.devices.file_sink import FileSinkDevice
    from narration_ms.services.narration_service import NarrationManager

    config = settings.get_config()
    device = FileSinkDevice(out_dir, extension=config.polly.output_format)
    manager = NarrationManager(config, device)

    if not manager.initialize():
        return {"ok": False, "error": "CLIENT_UNAVAILABLE", "items": []}

    items = []
    try:
        for text in texts:
            result = await manager.speak(text)
            if result.status == SpeakStatus.QUEUED and result.pending is not None:
                result = await result.pending
            items.append(result.to_dict())
        await device.drain()
    finally:
        await manager.dispose()

    return {
        "ok": all(item["ok"] for item in items),
        "items": items,
        "files": [str(p) for p in device.written],
        "metrics": manager.metrics.snapshot(),
    }


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

        1. Parse arguments and load settings
        2. --status: print manager status
        3. --dry-run: validate and summarize each text
        4. Otherwise narrate each text to the output directory

    Returns:
        Exit code (0 for success, 1 if any narration failed).
    """
    args = _parse_args(argv)

    configure_logging()
    log = get_logger("narration-ms.cli")
    set_request_id(str(uuid4())[:12])

    settings = _load_cli_settings(args)

    if args.status:
        from narration_ms.devices.file_sink import FileSinkDevice
        from narration_ms.services.narration_service import NarrationManager

        manager = NarrationManager(settings.get_config(), FileSinkDevice(args.out))
        manager.initialize()
        print(json.dumps(manager.get_status(), ensure_ascii=False, default=str))
        return 0

    texts = _load_texts(args)
    config = settings.get_config()

    if args.dry_run:
        summaries = [
            _summary_for_text(t, config.synthesis.max_text_length, config.logging.text_preview_chars)
            for t in texts
        ]
        payload = {"ok": True, "dry_run": True, "voice_id": config.polly.voice_id, "items": summaries}

        if args.json:
            print(json.dumps(payload, ensure_ascii=False))
        else:
            info(log, "dry_run", items=len(texts), voice_id=config.polly.voice_id)
            print(payload)
        print("DRY_RUN_OK")
        return 0

    out_dir = Path(args.out)
    info(log, "narrate_start", items=len(texts), out=str(out_dir))
    payload = asyncio.run(_narrate(settings, texts, out_dir))
    payload["dry_run"] = False

    if args.json:
        print(json.dumps(payload, ensure_ascii=False))
    else:
        print(payload)

    if not payload["ok"]:
        return 1
    print("CLI_OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
