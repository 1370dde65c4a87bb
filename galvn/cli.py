from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional
import sys

from .engine.adapters.generation import StaticGenerationBackend
from .engine.adapters.storage import FileKeyValueStore
from .engine.config_io import get_save_dir, load_config
from .engine.events import EndingReachEvent, SceneShowEvent
from .engine.save_manager import format_save_time
from .engine.session import NarrativeSession
from .story.errors import NarrativeError
from .story.loader import PRESET_TEMPLATES, ScriptLibrary, get_preset, parse_full_script
from .story.model import ScriptTemplate, CharacterConfig

logger = logging.getLogger(__name__)


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="galvn", description="galvn narrative session runner")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--save-dir", type=str, default=None, help="Override the save directory")
    parser.add_argument("--game", type=str, default="galvn", help="Game id used for the default save directory")
    sub = parser.add_subparsers(dest="cmd")

    # play subcommand: terminal presentation
    p_play = sub.add_parser("play", help="Play a script (or a generated story file) in the terminal")
    p_play.add_argument("script", type=str, help="Preset script id, or path to a chapters.json")
    p_play.add_argument("--stories", type=str, default="stories", help="Stories root directory")
    p_play.add_argument("--generated", type=str, default=None,
                        help="JSON file with {'initial': act, 'branches': {choice: act}} to play in generated mode")
    p_play.add_argument("--choose", type=int, default=None, help="Always pick this choice index (non-interactive)")
    p_play.add_argument("--max-steps", type=int, default=1000, help="Stop after this many steps")
    p_play.add_argument("--no-record", action="store_true", help="Do not write a completion record")

    p_saves = sub.add_parser("saves", help="List save slots")
    p_saves.add_argument("script", nargs="?", default=None, help="Only show this script")

    sub.add_parser("records", help="Show completion records and stats")

    p_cache = sub.add_parser("cache", help="Inspect or clear the generation cache")
    p_cache.add_argument("action", choices=["stats", "clear"], help="Cache action")

    args = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.save_dir:
        save_dir = Path(args.save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
    else:
        save_dir = get_save_dir(args.game)

    if args.cmd == "play":
        return asyncio.run(_cmd_play(args, save_dir))
    if args.cmd == "saves":
        return _cmd_saves(args, save_dir)
    if args.cmd == "records":
        return _cmd_records(save_dir)
    if args.cmd == "cache":
        return _cmd_cache(args, save_dir)

    parser.print_help()
    return 0


def _session(save_dir: Path, library: Optional[ScriptLibrary] = None,
             backend: Optional[StaticGenerationBackend] = None) -> NarrativeSession:
    return NarrativeSession(
        backend=backend or StaticGenerationBackend(),
        store=FileKeyValueStore(lambda: save_dir),
        library=library,
        config=load_config(lambda: save_dir),
    )


def _print_scene(event: SceneShowEvent) -> None:
    scene = event.scene
    if scene is None:
        return
    if scene.is_cg:
        print(f"[CG {scene.cg}]")
    if scene.narrative:
        print(f"  {scene.narrative}")
    if scene.dialogue:
        print(f"{scene.speaker or '???'}：{scene.dialogue}")


def _print_ending(event: EndingReachEvent) -> None:
    print(f"== {event.ending_name} ({event.ending_type}) ==")
    if event.description:
        print(f"  {event.description}")


async def _cmd_play(args: argparse.Namespace, save_dir: Path) -> int:
    library = ScriptLibrary(args.stories)
    backend = None
    if args.generated:
        try:
            data = json.loads(Path(args.generated).read_text(encoding="utf-8"))
            backend = StaticGenerationBackend(data.get("initial"), data.get("branches") or {})
        except (OSError, ValueError, AttributeError) as e:
            print(f"Cannot read generated story file: {e}")
            return 2

    session = _session(save_dir, library, backend)
    session.events.subscribe(SceneShowEvent, _print_scene)
    session.events.subscribe(EndingReachEvent, _print_ending)

    script_id = args.script
    path = Path(script_id)
    try:
        if backend is not None:
            template = get_preset(script_id) or ScriptTemplate(
                id=script_id, name=script_id, character=CharacterConfig(name=""),
            )
            if await session.start_generated(template) is None:
                print(session.error or "Failed to start")
                return 1
        else:
            if path.suffix == ".json" and path.exists():
                script = parse_full_script(json.loads(path.read_text(encoding="utf-8")), path.parent.parent.name)
                library.add(script)
                script_id = script.id
            session.start_script(script_id)
    except (NarrativeError, OSError, ValueError) as e:
        print(f"Failed to start {script_id}: {e}")
        return 1

    for _ in range(args.max_steps):
        if session.is_game_over:
            break
        if session.error:
            print(session.error)
            return 1
        if session.show_choices:
            for i, choice in enumerate(session.choices):
                print(f"  [{i}] {choice.text}")
            index = args.choose if args.choose is not None else _ask_choice(len(session.choices))
            if index is None:
                break
            await session.select_choice(min(max(index, 0), len(session.choices) - 1))
            continue
        session.advance()

    if session.is_game_over and not args.no_record:
        record = session.finish()
        if record is not None:
            print(f"结局: {record.ending_type}  好感度: {record.final_affection}  回合: {record.turns_played}")
    session.shutdown()
    return 0


def _ask_choice(count: int) -> Optional[int]:
    while True:
        try:
            raw = input("> ")
        except EOFError:
            return None
        if raw.strip().isdigit() and int(raw) < count:
            return int(raw)
        print(f"Enter a number between 0 and {count - 1}")


def _cmd_saves(args: argparse.Namespace, save_dir: Path) -> int:
    session = _session(save_dir)
    script_ids = [args.script] if args.script else session.saves.saved_scripts()
    if not script_ids:
        print("No saves")
        return 0
    for sid in script_ids:
        info = session.saves.script_saves(sid)
        print(sid)
        for slot in info.slots:
            marker = "*" if info.last_played_slot == slot.slot_index else " "
            if slot.save_data is None:
                print(f" {marker}[{slot.slot_index}] (empty)")
            else:
                sd = slot.save_data
                print(f" {marker}[{slot.slot_index}] {format_save_time(sd.timestamp)}  "
                      f"ch.{sd.chapter_index + 1}  ♥{sd.affection}  {sd.preview_text}")
    return 0


def _cmd_records(save_dir: Path) -> int:
    records = _session(save_dir).records
    for r in records.all_records():
        print(f"{format_save_time(r.completed_at)}  {r.script_name}  {r.ending_type}  ♥{r.final_affection}")
    stats = records.stats()
    print(json.dumps(stats, ensure_ascii=False))
    return 0


def _cmd_cache(args: argparse.Namespace, save_dir: Path) -> int:
    cache = _session(save_dir).cache
    if args.action == "clear":
        cache.invalidate_all()
        print("Cache cleared")
        return 0
    stats = cache.stats(t.id for t in PRESET_TEMPLATES)
    print(json.dumps(stats, ensure_ascii=False))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
