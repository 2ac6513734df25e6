"""Interactive prompts used by the resolver, credential collector and CLI."""

import typer


class Prompter:
    """Thin wrapper over typer prompts so callers can be driven in tests."""

    def ask(self, text: str, default: str = "") -> str:
        """Prompt for a line of plain text."""
        return str(typer.prompt(text, default=default, show_default=bool(default)))

    def ask_secret(self, text: str) -> str:
        """Prompt for masked input."""
        return str(typer.prompt(text, hide_input=True))

    def confirm(self, text: str, default: bool = False) -> bool:
        """Yes/no question."""
        return bool(typer.confirm(text, default=default))
