"""
Rich printers for displaying gateway event streams and request results.
"""
from typing import Any, AsyncIterator, Dict, List, Optional
from rich.console import Console
from rich.markdown import Markdown
from rich.syntax import Syntax
from rich.panel import Panel
from rich.live import Live
from rich.console import Group
from rich.text import Text
import json

from .types import ErrorEvent, StreamEvent, ToolCall


def _tool_lines(tool_calls: List[ToolCall]) -> Text:
    text = Text()
    for call in tool_calls:
        text.append("tool ", style="bold magenta")
        text.append(call["function"]["name"], style="magenta")
        text.append(f" {call['function']['arguments']}\n", style="dim")
    return text


def _error_lines(errors: List[ErrorEvent]) -> Text:
    text = Text()
    for error in errors:
        style = "bold red" if error.get("fatal") else "yellow"
        code = f"[{error['code']}] " if error.get("code") else ""
        text.append(f"{code}{error['error']}\n", style=style)
    return text


class RichStreamPrinter:
    """
    Live display of a gateway event stream using rich.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show cost and usage at the end
        show_thinking: Whether to render thinking content above the answer
        code_theme: Theme for code blocks
        inline_code_theme: Theme for inline code
        refresh_rate: Refresh rate for Live display
        show_final_title: Whether to change title to "Final Response" at the end
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        show_thinking: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        show_final_title: bool = True,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.show_thinking = show_thinking
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.show_final_title = show_final_title
        self.border_style = border_style
        self.console = console or Console()
        self._reset()

    def _reset(self) -> None:
        self._full_text = ""
        self._thinking = ""
        self._tool_calls: List[ToolCall] = []
        self._errors: List[ErrorEvent] = []
        self._cost: Optional[Dict[str, Any]] = None
        self._model: Optional[str] = None

    async def print_stream(self, event_stream: AsyncIterator[StreamEvent]) -> str:
        """
        Process and display streaming events with rich formatting.

        Args:
            event_stream: Async iterator yielding gateway events

        Returns:
            The full text received
        """
        self._reset()
        panel = Panel("", border_style=self.border_style)

        with Live(panel, refresh_per_second=self.refresh_rate, console=self.console) as live:
            async for event in event_stream:
                self._process_event(event)
                self._update_display(live, is_final=False)
            self._update_display(live, is_final=True)

        return self._full_text

    def _process_event(self, event: StreamEvent) -> None:
        """Fold a single event into the display state."""
        kind = event["type"]
        if kind == "message_delta":
            self._full_text += event.get("content", "")
            self._thinking += event.get("thinking_content", "")
        elif kind == "message_complete":
            # Complete content always extends what the deltas carried
            self._full_text = event.get("content", self._full_text)
        elif kind == "tool_start":
            self._tool_calls.append(event["tool_call"])
        elif kind == "cost_update":
            self._model = event.get("model")
            self._cost = {"cost": event.get("cost"), "usage": event.get("usage")}
            if event.get("estimated"):
                self._cost["estimated"] = True
        elif kind == "error":
            self._errors.append(event)

    def _update_display(self, live: Live, is_final: bool = False) -> None:
        """Update the Live display with current content."""
        border = "red" if any(e.get("fatal") for e in self._errors) else ("green" if is_final else self.border_style)
        live.update(
            Panel(
                self._build_content(is_final),
                title=self._build_title(is_final),
                border_style=border,
                padding=(1, 2)
            )
        )

    def _build_title(self, is_final: bool) -> str:
        """Build the panel title."""
        if is_final and self.show_final_title:
            title = "[bold]Final Response[/bold]"
        else:
            title = f"[bold]{self.title}[/bold]"
        if self._model:
            title += f" [dim]({self._model})[/dim]"
        return title

    def _build_content(self, is_final: bool) -> Any:
        """Build the panel content."""
        parts: List[Any] = []
        if self.show_thinking and self._thinking.strip():
            parts.append(Panel(Text(self._thinking, style="dim italic"), title="Thinking", border_style="dim"))

        if self._full_text.strip():
            parts.append(Markdown(
                self._full_text,
                code_theme=self.code_theme,
                inline_code_theme=self.inline_code_theme
            ))
        if self._tool_calls:
            parts.append(_tool_lines(self._tool_calls))
        if self._errors:
            parts.append(_error_lines(self._errors))

        if not parts:
            return Text("(waiting for response...)", style="dim italic")

        if is_final and self.show_metadata and self._cost:
            metadata_display = Syntax(
                json.dumps(self._cost, indent=2, default=str),
                "json",
                theme="lightbulb",
                background_color="default"
            )
            parts.append(Panel(metadata_display, title="[bold]Cost[/bold]", border_style="dim"))

        return Group(*parts)

    def get_full_text(self) -> str:
        """Get the full assembled text."""
        return self._full_text

    def get_tool_calls(self) -> List[ToolCall]:
        return list(self._tool_calls)
