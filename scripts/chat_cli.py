#!/usr/bin/env python3
"""Interactive chat CLI for the conversation service."""

import json
import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt


class ChatCLI:
    """Interactive chat interface that streams turn events."""

    def __init__(self, base_url: str = "http://localhost:8000", user_id: str = "cli-user", world_id: str = "default"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.user_id = user_id
        self.world_id = world_id
        self.console = Console()
        self.client = httpx.Client(timeout=300.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Parley - Interactive Chat[/bold blue]\n"
                f"Conversation: {self.user_id} / {self.world_id}\n"
                "Commands: /help, /history, /tools, /clear, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]❌ Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]✅ Connected[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")
                command = user_input.strip().lower()

                if command in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command == "/help":
                    self._show_help()
                elif command == "/clear":
                    self.client.delete(f"{self.base_url}/conversation/{self.user_id}/{self.world_id}")
                    self.console.print("[yellow]🔄 Conversation cleared[/yellow]")
                elif command == "/history":
                    self._show_history()
                elif command == "/tools":
                    self._show_tools()
                elif command:
                    self._stream_message(user_input)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _stream_message(self, message: str) -> None:
        """Send a message and render events as they arrive."""
        payload = {"message": message, "user_id": self.user_id, "world_id": self.world_id}
        try:
            with self.client.stream("POST", f"{self.base_url}/conversation/stream", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
                    return
                for line in response.iter_lines():
                    if line.strip():
                        self._render(json.loads(line))
        except KeyboardInterrupt:
            self.client.post(
                f"{self.base_url}/conversation/cancel", json={"user_id": self.user_id, "world_id": self.world_id}
            )
            self.console.print("[yellow]🛑 Cancel requested[/yellow]")
        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")

    def _render(self, record: dict) -> None:
        if record.get("type") == "final":
            usage = record.get("usage") or {}
            self.console.print(
                f"[dim]{usage.get('requests', 0)} model requests, {usage.get('total_tokens', 0)} tokens[/dim]"
            )
            return

        kind = record.get("kind")
        display = record.get("display") or record.get("content") or ""
        if kind == "assistant_message":
            self.console.print(
                Panel(
                    Markdown(display),
                    title="[bold green]🤖 Assistant[/bold green]",
                    border_style="green",
                    padding=(1, 2),
                )
            )
        elif kind == "tool_result":
            style = "red" if record.get("is_error") else "magenta"
            self.console.print(f"[{style}]🔧 {record.get('tool_name')}: {display}[/{style}]")
        else:
            self.console.print(f"[dim]{display}[/dim]")

    def _show_history(self) -> None:
        response = self.client.get(f"{self.base_url}/conversation/{self.user_id}/{self.world_id}")
        data = response.json()
        for message in data.get("messages", []):
            self.console.print(f"[bold]{message['role']}[/bold]: {message['content']}")
        self.console.print(f"[dim]{data.get('session_tokens', 0)} tokens in context[/dim]")

    def _show_tools(self) -> None:
        data = self.client.get(f"{self.base_url}/tools").json()
        lines = [
            f"• {tool['name']} ({tool['category']}) - {tool['success_count']}/{tool['execution_count']} ok"
            for tool in data.get("tools", [])
        ]
        self.console.print(Panel("\n".join(lines) or "No tools", title="[yellow]🔧 Tools[/yellow]"))

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /history - Show the visible conversation history
• /tools - List registered tools and their counters
• /clear - Delete this conversation
• /quit or /exit - Exit the chat

[bold]Tips:[/bold]
• Press Ctrl+C while a reply is streaming to cancel the turn
• Try "What documents are there?" to see a tool call
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    user_id = sys.argv[2] if len(sys.argv) > 2 else "cli-user"
    world_id = sys.argv[3] if len(sys.argv) > 3 else "default"

    chat = ChatCLI(base_url, user_id, world_id)
    chat.start()


if __name__ == "__main__":
    main()
