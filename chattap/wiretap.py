"""
Wiretap: a structured record of what the engine saw and did.

Two parts:
  1. WireLog: appends one JSONL entry per event (classified message,
     trigger decision, suggestion result)
  2. live_tap(): reads the JSONL and renders a colour-coded live view

The wire log is separate from the debug log. It only says what went over the
line: who said what in which chat, and what the engine asked the AI for.
"""

import json
import time
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_CONTACT = "\033[96m"    # cyan
C_YOU = "\033[92m"        # green
C_TRIGGER = "\033[90m"    # gray
C_AI = "\033[93m"         # yellow
C_CHAT = "\033[95m"       # magenta
C_TIME = "\033[90m"
C_BORDER = "\033[90m"
C_ERROR = "\033[91m"      # red


ROLE_COLORS = {
    "contact": C_CONTACT,
    "you": C_YOU,
    "trigger": C_TRIGGER,
    "suggestion": C_AI,
}

ROLE_ICONS = {
    "contact": "▶",
    "you": "◀",
    "trigger": "●",
    "suggestion": "✦",
}

MAX_CONTENT = 2000


class WireLog:
    """
    Structured JSONL logger for the wire.

    Format:
        {"ts": "...", "dir": "inbound|outbound", "role": "contact|you|trigger|suggestion",
         "chat": "...", "len": 12, "content": "...", ...extra}

    inbound is anything read off the screen; outbound is anything the engine
    produced (trigger decisions, AI suggestions).
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(self, direction: str, role: str, content: str, chat: str = "", **extra):
        """Write a wire log entry."""
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "chat": chat,
            "len": len(content),
        }
        entry.update({k: v for k, v in extra.items() if v not in (None, "")})

        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            entry["content"] = content[:1000] + f"\n\n[... {len(content) - MAX_CONTENT} chars truncated ...]\n\n" + content[-1000:]

        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def log_message(self, chat: str, text: str, is_incoming: bool, signals=()):
        self.log(
            "inbound",
            "contact" if is_incoming else "you",
            text,
            chat=chat,
            signals=",".join(sorted(s.value for s in signals)),
        )

    def log_trigger(self, chat: str, action: str, detail: str = ""):
        self.log("outbound", "trigger", detail or action, chat=chat, action=action)

    def log_suggestions(self, chat: str, kind: str, suggestions: list[str], error: str = "", fallback: bool = False):
        self.log(
            "outbound",
            "suggestion",
            "\n".join(suggestions),
            chat=chat,
            kind=kind,
            error=error,
            fallback=fallback or None,
        )

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        dt = datetime.fromisoformat(ts)
        time_str = dt.strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    role = entry.get("role", "?")
    direction = entry.get("dir", "?")
    chat = entry.get("chat", "")
    content = entry.get("content", "")
    char_len = entry.get("len", 0)

    role_color = ROLE_COLORS.get(role, C_RESET)
    icon = ROLE_ICONS.get(role, "?")

    if direction == "inbound":
        arrow = f"{C_DIM}──▶{C_RESET}"
    else:
        arrow = f"{C_DIM}◀──{C_RESET}"

    lines = []
    header = f"  {C_TIME}{time_str}{C_RESET} {arrow} {role_color}{C_BOLD}{icon} {role.upper()}{C_RESET}"
    if chat:
        header += f"  {C_CHAT}[{chat}]{C_RESET}"
    if entry.get("kind"):
        header += f"  {C_DIM}{entry['kind']}{C_RESET}"
    if entry.get("action"):
        header += f"  {C_DIM}{entry['action']}{C_RESET}"
    if entry.get("signals"):
        header += f"  {C_DIM}signals:{entry['signals']}{C_RESET}"
    if entry.get("fallback"):
        header += f"  {C_DIM}(fallback){C_RESET}"
    header += f"  {C_DIM}({char_len} chars){C_RESET}"
    lines.append(header)

    if entry.get("error"):
        lines.append(f"      {C_ERROR}✗ {entry['error']}{C_RESET}")

    if content:
        display_content = content
        if len(display_content) > 500:
            display_content = display_content[:500] + f"\n      {C_DIM}[... truncated]{C_RESET}"
        for cline in display_content.split("\n")[:15]:
            lines.append(f"      {cline}")
        if display_content.count("\n") > 15:
            lines.append(f"      {C_DIM}[... {display_content.count(chr(10)) - 15} more lines]{C_RESET}")

    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    chat_filter: str | None = None,
    raw: bool = False,
):
    """
    Live tail of the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        role_filter: Only show entries matching this role.
        chat_filter: Only show entries for this chat.
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from chattap.config import get_config
        cfg = get_config()
        log_path = cfg.get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)

    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print(f"     Start chattap first: chattap serve")
        return

    def _wanted(entry: dict) -> bool:
        if role_filter and entry.get("role") != role_filter:
            return False
        if chat_filter and entry.get("chat") != chat_filter:
            return False
        return True

    def _emit(line: str):
        line = line.strip()
        if not line:
            return
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            return
        if _wanted(entry):
            print(_format_entry(entry, raw=raw))

    if not raw:
        print(f"  ☎  Tapping into {wire_path}")
        print(f"  {C_BORDER}{'═' * 60}{C_RESET}")

    with open(wire_path) as f:
        all_lines = f.readlines()

    start = max(0, len(all_lines) - last_n)
    for line in all_lines[start:]:
        _emit(line)

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new traffic... Ctrl+C to hang up]{C_RESET}\n")

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _emit(line)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[line disconnected]{C_RESET}")
