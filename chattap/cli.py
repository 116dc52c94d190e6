#!/usr/bin/env python3
"""
chattap CLI: watch the chat, suggest the reply.

Every command has a phreaker name and a standard alias:

    PHREAKER        STANDARD        WHAT IT DOES
    --------        --------        ----------------------------------
    dial            start, serve    Start the chattap service
    tap             log, tail       Live wiretap: watch messages and suggestions
    replay          play            Run recorded observations through the engine
    ring            status, ping    Ping a running instance
    flash           info, config    Show config at a glance
    tone            banner          Print the chattap banner
"""

import argparse
import sys

from chattap import __version__

BANNER = r"""
    ╔══════════════════════════════════════════════════╗
    ║                                                  ║
    ║    ██████ ██   ██  █████  ████████               ║
    ║   ██      ██   ██ ██   ██    ██                  ║
    ║   ██      ███████ ███████    ██                  ║
    ║   ██      ██   ██ ██   ██    ██                  ║
    ║    ██████ ██   ██ ██   ██    ██                  ║
    ║                                                  ║
    ║   ████████  █████  ██████                        ║
    ║      ██    ██   ██ ██   ██                       ║
    ║      ██    ███████ ██████                        ║
    ║      ██    ██   ██ ██                            ║
    ║      ██    ██   ██ ██                            ║
    ║                                                  ║
    ║   Watch the chat. Suggest the reply.   v""" + __version__ + r"""  ║
    ║                                                  ║
    ╚══════════════════════════════════════════════════╝
"""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_dial(args):
    """Start the chattap service."""
    import uvicorn
    from chattap.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]
    b_cfg = cfg.get("suggestions", {}).get("backend", {})

    print(BANNER)
    print(f"  Dialing up on {host}:{port}")
    print(f"  Suggestions: {b_cfg.get('provider', 'gemini')} @ {b_cfg.get('url', '')}")
    print(f"  Model: {b_cfg.get('model', '')}")
    print()

    uvicorn.run(
        "chattap.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_tap(args):
    """Live wiretap: watch messages and suggestions on the wire."""
    from chattap.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        chat_filter=args.chat,
        raw=args.raw,
    )


def _load_replay(path: str) -> list[dict]:
    """
    Read a replay file. Each JSONL line is one screen capture:
        {"chat": "Alice", "observations": [{...}, ...], "delay_ms": 500}
    """
    import json

    steps = []
    with open(path) as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                step = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON ({e})") from e
            if not isinstance(step, dict) or "chat" not in step:
                raise ValueError(f"{path}:{lineno}: expected an object with a 'chat' key")
            steps.append(step)
    return steps


async def _replay(steps: list[dict], cfg: dict, timeout: float) -> dict:
    import asyncio
    from chattap.engine import ChatEngine
    from chattap.models import Observation

    def show_result(result):
        tag = "fallback" if result.fallback else result.kind.value
        print(f"  ✦  [{result.contact_name}] {tag}:")
        for s in result.suggestions:
            print(f"       • {s}")

    engine = ChatEngine.from_config(cfg, on_result=show_result)
    engine.bind_loop()
    try:
        for step in steps:
            chat = step["chat"]
            observations = [Observation.from_dict(o) for o in step.get("observations", [])]
            outcomes = engine.observe(chat, observations)
            for obs, outcome in zip(observations, outcomes):
                print(f"  {outcome.value:<10} [{chat}] {obs.text[:60]!r}")
            if step.get("draft"):
                engine.improve_draft(step["draft"])
            delay = step.get("delay_ms", 0)
            if delay:
                await asyncio.sleep(delay / 1000)
        await engine.drain(timeout)
        return engine.status()
    finally:
        engine.close()


def cmd_replay(args):
    """Run a JSONL file of recorded observations through the engine."""
    import asyncio
    import copy
    from chattap.config import get_config

    try:
        steps = _load_replay(args.file)
    except (OSError, ValueError) as e:
        print(f"  ✗  {e}")
        sys.exit(1)

    cfg = copy.deepcopy(get_config())
    if not args.wire:
        cfg.setdefault("wiretap", {})["enabled"] = False
    if args.no_sync:
        cfg.setdefault("sync", {})["enabled"] = False

    print(f"  ▶  Replaying {len(steps)} captures from {args.file}")
    print("  " + "─" * 56)
    try:
        status = asyncio.run(_replay(steps, cfg, args.timeout))
    except asyncio.TimeoutError:
        print(f"  ✗  Suggestions still pending after {args.timeout}s")
        sys.exit(1)

    conv = status.get("conversation")
    print("  " + "─" * 56)
    if not conv:
        print("  No active conversation.")
        return
    print(f"  Chat: {conv['contact_name']}  (state: {conv['trigger_state']})")
    for msg in conv["history"]:
        who = conv["contact_name"] if msg["is_incoming"] else "YOU"
        print(f"    ({who} {msg['display_timestamp']}) {msg['text']}")
    if conv["suggested_replies"]:
        print("  Suggested replies:")
        for s in conv["suggested_replies"]:
            print(f"    • {s}")


def cmd_ring(args):
    """Ping a running chattap instance."""
    import httpx

    url = (args.url or "http://localhost:8100").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        if resp.status_code == 200:
            print(f"  ☎  Ring ring... {url} is UP")
            active = httpx.get(f"{url}/v1/chats/active", timeout=5).json()
            conv = active.get("conversation")
            if conv:
                print(f"  💬 Active chat: {conv['contact_name']} ({len(conv['history'])} messages)")
                print(f"  🎯 Trigger state: {conv['trigger_state']}")
                print(f"  ✦  Suggestions: {len(conv['suggested_replies'])}")
            else:
                print("  💬 No active chat")
            backend = httpx.get(f"{url}/v1/backend", timeout=10).json()
            mark = "✓" if backend.get("healthy") else "✗"
            print(f"  {mark}  AI backend: {backend.get('name', '?')}")
        else:
            print(f"  ✗  No answer, got HTTP {resp.status_code}")
    except httpx.ConnectError:
        print(f"  ✗  Dead line, nothing at {url}")
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")


def cmd_flash(args):
    """Show config at a glance."""
    from chattap.config import get_config

    cfg = get_config()
    s_cfg = cfg.get("suggestions", {})
    b_cfg = s_cfg.get("backend", {})
    sync_cfg = cfg.get("sync", {})

    print(BANNER)
    print("  Service")
    print(f"  ├─ Listen:    {cfg['server']['host']}:{cfg['server']['port']}")
    print(f"  ├─ Log:       {cfg.get('logging', {}).get('file', '(stderr only)')}")
    wire = cfg.get("wiretap", {})
    print(f"  └─ Wire log:  {wire.get('path', '') if wire.get('enabled') else 'disabled'}")

    print()
    print("  Suggestions")
    print(f"  ├─ Provider:  {b_cfg.get('provider', 'gemini')}")
    print(f"  ├─ Model:     {b_cfg.get('model', '')}")
    print(f"  ├─ API key:   {'set' if b_cfg.get('api_key') else 'MISSING'}")
    print(f"  ├─ Spacing:   {s_cfg.get('spacing_ms', 3000)}ms")
    print(f"  └─ Fallback:  {s_cfg.get('fallback_reply', '')!r}")

    print()
    print("  Conversation")
    print(f"  ├─ Window:    {cfg.get('conversation', {}).get('history_limit', 30)} messages")
    c_cfg = cfg.get("classifier", {})
    print(f"  └─ Right-align threshold: {c_cfg.get('right_align_ratio', 0.6):.0%} of screen width")

    print()
    print("  Persistence")
    if sync_cfg.get("enabled"):
        print(f"  ├─ Backend:   {sync_cfg.get('url', '')}")
        print(f"  ├─ Token:     {'set' if sync_cfg.get('token') else 'MISSING'}")
        print(f"  ├─ Debounce:  {sync_cfg.get('debounce_ms', 5000)}ms")
        print(f"  └─ Acceptance required: {cfg.get('acceptance', {}).get('required', False)}")
    else:
        print("  └─ disabled")


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names (phreaker + standard)."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chattap",
        description="chattap: watch the chat, suggest the reply.",
        epilog=(
            "Each command has a phreaker name and standard aliases.\n"
            "Example: 'chattap dial' and 'chattap serve' do the same thing.\n"
            "Run 'chattap <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chattap {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # dial / start / serve / up
    def setup_dial(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["dial", "start", "serve", "up"],
                 "Start the chattap service", cmd_dial, setup_dial)

    # tap / log / tail / watch
    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["contact", "you", "trigger", "suggestion"],
                       default=None, help="Filter by role")
        p.add_argument("--chat", "-c", default=None, help="Filter by chat name")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail", "watch"],
                 "Live wiretap: watch messages and suggestions", cmd_tap, setup_tap)

    # replay / play
    def setup_replay(p):
        p.add_argument("file", help="JSONL file of captures: {chat, observations, delay_ms, draft}")
        p.add_argument("--timeout", "-t", type=float, default=60.0,
                       help="Seconds to wait for outstanding suggestions (default: 60)")
        p.add_argument("--wire", action="store_true", help="Also write to the wire log")
        p.add_argument("--no-sync", action="store_true", help="Never talk to the persistence backend")

    _add_command(sub, ["replay", "play"],
                 "Run recorded observations through the engine", cmd_replay, setup_replay)

    # ring / status / ping / health
    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="chattap URL (default: http://localhost:8100)")

    _add_command(sub, ["ring", "status", "ping", "health"],
                 "Ping a running chattap instance", cmd_ring, setup_ring)

    # flash / info / config
    _add_command(sub, ["flash", "info", "config"],
                 "Show config at a glance", cmd_flash)

    # tone / banner
    _add_command(sub, ["tone", "banner"],
                 "Print the chattap banner", cmd_tone)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
