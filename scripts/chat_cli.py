#!/usr/bin/env python3
"""Interactive chat CLI that streams replies from the reminder assistant."""

import json
import sys

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt


class ChatCLI:
    """Interactive chat interface for the reminder assistant."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        user_id: str = "cli-user",
        phone_number: str | None = None,
    ):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.user_id = user_id
        self.phone_number = phone_number
        self.conversation_id: str | None = None
        self.console = Console()
        self.client = httpx.Client(timeout=httpx.Timeout(10.0, read=180.0))

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]🔔 Nudge - Interactive Chat[/bold blue]\n"
                "Ask for reminders in plain language.\n"
                "Commands: /help, /clear, /reminders, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]❌ Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]✅ Connected to Nudge[/green]\n")
        if not self.phone_number:
            self.console.print("[yellow]No phone number given, reminders cannot be created for SMS delivery.[/yellow]")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")

                if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif user_input.lower() == "/help":
                    self._show_help()
                    continue
                elif user_input.lower() == "/clear":
                    self.conversation_id = None
                    self.console.print("[yellow]🔄 Started a new conversation[/yellow]")
                    continue
                elif user_input.lower() == "/reminders":
                    self._show_reminders()
                    continue
                elif user_input.strip() == "":
                    continue

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
        """Send a message and print agent events as they arrive."""
        payload = {"user_id": self.user_id, "message": message}
        if self.phone_number:
            payload["phone_number"] = self.phone_number
        if self.conversation_id:
            payload["conversation_id"] = self.conversation_id

        self.console.print("[bold green]🤖 Nudge[/bold green]: ", end="")
        try:
            with self.client.stream("POST", f"{self.base_url}/chat", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
                    return

                for line in response.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[len("data: ") :]
                    if data == "[DONE]":
                        break
                    self._display_event(json.loads(data))

        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return

        self.console.print()

    def _display_event(self, event: dict) -> None:
        """Render one streamed event."""
        event_type = event.get("type")
        data = event.get("data")

        if event_type == "token":
            self.console.print(data, end="", markup=False, highlight=False)
        elif event_type == "conversation_id":
            self.conversation_id = data
        elif event_type == "tool_start":
            self.console.print(f"\n[dim]🔧 {data['name']}({json.dumps(data.get('input') or {})})[/dim]")
        elif event_type == "tool_end":
            self.console.print(f"[dim]   → {data.get('output', '')[:200]}[/dim]")
        elif event_type == "error":
            self.console.print(f"\n[red]❌ {data}[/red]")

    def _show_reminders(self) -> None:
        """Show the user's reminders."""
        try:
            response = self.client.get(f"{self.base_url}/reminders", params={"user_id": self.user_id})
        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return

        reminders = response.json() if response.status_code == 200 else []
        if not reminders:
            self.console.print("[dim]No reminders yet.[/dim]")
            return

        lines = [f"• [{r['status']}] {r['title']} at {r['scheduled_for']} ({r['id']})" for r in reminders]
        self.console.print(Panel("\n".join(lines), title="[yellow]📋 Reminders[/yellow]", border_style="yellow"))

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /clear - Start a new conversation
• /reminders - List your reminders
• /quit or /exit - Exit the chat

[bold]Example Conversation:[/bold]
1. "Remind me to call mom tomorrow at 3pm"
2. "Actually make it 4pm"
3. "What reminders do I have?"
4. "Cancel the call mom reminder"
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI.

    Usage: chat_cli.py [base_url] [phone_number]
    """
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    phone_number = sys.argv[2] if len(sys.argv) > 2 else None

    chat = ChatCLI(base_url, user_id=phone_number or "cli-user", phone_number=phone_number)
    chat.start()


if __name__ == "__main__":
    main()
