"""Console theme and panel helpers for the codeloop CLI."""

from __future__ import annotations

import os

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

CODELOOP_THEME = Theme(
    {
        "codeloop.banner": "bold #38BDF8",
        "codeloop.prompt": "bold #A855F7",
        "codeloop.user.border": "#A855F7",
        "codeloop.agent.border": "#22C55E",
        "codeloop.tool": "#94A3B8",
        "codeloop.tool.error": "#FB7185",
        "codeloop.info": "#38BDF8",
        "codeloop.warning": "bold #FBBF24",
        "codeloop.error": "bold #FB7185",
        "codeloop.success": "bold #22C55E",
        "codeloop.muted": "#64748B",
        "codeloop.added": "#22C55E",
        "codeloop.removed": "#FB7185",
    }
)


def themed_console(**kwargs: object) -> Console:
    """Return a console that uses the codeloop theme."""

    if os.environ.get("NO_COLOR"):
        kwargs.setdefault("no_color", True)
    return Console(theme=CODELOOP_THEME, highlight=False, **kwargs)  # type: ignore[arg-type]


def render_banner(console: Console, *, workspace: str, model: str, chat_mode: bool) -> None:
    mode = "chat" if chat_mode else "agent"
    title = Text("codeloop", style="codeloop.banner")
    body = Text.assemble(
        ("workspace ", "codeloop.muted"),
        (workspace, ""),
        ("\nmodel     ", "codeloop.muted"),
        (model, ""),
        ("\nmode      ", "codeloop.muted"),
        (mode, ""),
        ("\n\nType /help for commands, /exit to quit.", "codeloop.muted"),
    )
    console.print(Panel(body, title=title, box=box.ROUNDED, border_style="codeloop.banner", expand=False))


def message_panel(role: str, message: str) -> Panel:
    if role == "user":
        return Panel(Text(message), title="You", title_align="left", border_style="codeloop.user.border", box=box.ROUNDED)
    return Panel(
        Markdown(message or "(no response)"),
        title="codeloop",
        title_align="left",
        border_style="codeloop.agent.border",
        box=box.ROUNDED,
    )


__all__ = ["CODELOOP_THEME", "message_panel", "render_banner", "themed_console"]
