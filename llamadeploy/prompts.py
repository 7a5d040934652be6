"""
Operator prompts.

Every branch the deployment can take on existing state (reinstall? re-clone?
reconfigure? what to do with an existing user?) goes through a Prompter. The
interactive prompter asks on the terminal; the non-interactive one answers from
settings and environment so the same code paths run unattended and in tests.
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping

from rich.prompt import Confirm, Prompt

from llamadeploy.branding import console

PASSWORD_ENV_PREFIX = "LLAMA_PASSWORD_"


def password_env_var(username: str) -> str:
    """Name of the environment variable holding a user's password."""
    return PASSWORD_ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", username).upper()


class Prompter(ABC):
    """Interface shared by the interactive and non-interactive prompters.

    ``key`` identifies the decision so a non-interactive run can look up a
    preset answer; ``default`` is what an unattended run falls back to.
    """

    @abstractmethod
    def confirm(self, key: str, question: str, default: bool = False) -> bool:
        pass

    @abstractmethod
    def choose(self, key: str, question: str, choices: list[str], default: str) -> str:
        pass

    @abstractmethod
    def ask(self, key: str, question: str, default: str = "") -> str:
        pass

    @abstractmethod
    def password(self, username: str) -> str | None:
        pass

    @abstractmethod
    def secret(self, key: str, question: str) -> str | None:
        """Ask for an existing secret once, without echo."""
        pass


class InteractivePrompter(Prompter):
    """Asks on the terminal through rich prompts."""

    def confirm(self, key: str, question: str, default: bool = False) -> bool:
        return Confirm.ask(question, default=default, console=console)

    def choose(self, key: str, question: str, choices: list[str], default: str) -> str:
        return Prompt.ask(question, choices=choices, default=default, console=console)

    def ask(self, key: str, question: str, default: str = "") -> str:
        return Prompt.ask(question, default=default, console=console)

    def password(self, username: str) -> str | None:
        first = Prompt.ask(f"New password for {username}", password=True, console=console)
        second = Prompt.ask(f"Re-type password for {username}", password=True, console=console)
        if not first or first != second:
            console.print("[red]Passwords are empty or do not match[/red]")
            return None
        return first

    def secret(self, key: str, question: str) -> str | None:
        return Prompt.ask(question, password=True, console=console) or None


class NonInteractivePrompter(Prompter):
    """Answers from a preset mapping, falling back to each prompt's default.

    Args:
        answers: Decision key -> answer (bool for confirms, str otherwise).
        passwords: Username -> password. Users missing here are looked up in
            ``LLAMA_PASSWORD_<USERNAME>`` environment variables.
        environ: Environment used for the password lookup.
    """

    def __init__(
        self,
        answers: Mapping[str, object] | None = None,
        passwords: Mapping[str, str] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.answers = dict(answers or {})
        self.passwords = dict(passwords or {})
        self.environ = environ if environ is not None else os.environ
        self.asked: list[str] = []

    def confirm(self, key: str, question: str, default: bool = False) -> bool:
        self.asked.append(key)
        answer = self.answers.get(key)
        return default if answer is None else bool(answer)

    def choose(self, key: str, question: str, choices: list[str], default: str) -> str:
        self.asked.append(key)
        answer = self.answers.get(key)
        if answer is None:
            return default
        return str(answer)

    def ask(self, key: str, question: str, default: str = "") -> str:
        self.asked.append(key)
        answer = self.answers.get(key)
        return default if answer in (None, "") else str(answer)

    def password(self, username: str) -> str | None:
        if username in self.passwords:
            return self.passwords[username]
        return self.environ.get(password_env_var(username)) or None

    def secret(self, key: str, question: str) -> str | None:
        self.asked.append(key)
        answer = self.answers.get(key)
        return str(answer) if answer else None
