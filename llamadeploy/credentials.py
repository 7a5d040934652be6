"""
Basic-auth credential reconciliation.

Brings the proxy's htpasswd file in line with the configured user list. Each
user is handled on its own: one failed ``htpasswd`` call is recorded and the
remaining users are still processed.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock
from rich.markup import escape

from llamadeploy.artifacts import ArtifactStore
from llamadeploy.branding import ui_print
from llamadeploy.config import USER_ACTIONS
from llamadeploy.errors import CommandError
from llamadeploy.prompts import Prompter
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 60


class HtpasswdStore:
    """The htpasswd file, read directly and modified through ``htpasswd``."""

    def __init__(self, path: Path, runner: CommandRunner):
        self.path = Path(path)
        self.runner = runner
        self.artifacts = ArtifactStore(runner)

    def file_exists(self) -> bool:
        return self.artifacts.exists(self.path)

    def users(self) -> list[str]:
        """Usernames in file order."""
        text = self.artifacts.read_text(self.path)
        if not text:
            return []
        return [line.split(":", 1)[0] for line in text.splitlines() if ":" in line]

    def exists(self, username: str) -> bool:
        return username in self.users()

    def set_password(self, username: str, password: str, create: bool = False) -> None:
        """Add or replace an entry. The password travels on stdin, never in argv.

        Raises:
            CommandError: If htpasswd fails.
        """
        cmd = ["htpasswd", "-i"]
        if create:
            cmd.append("-c")
        cmd += [str(self.path), username]
        self.runner.run(
            cmd,
            sudo=True,
            input=password + "\n",
            check=True,
            error_message=f"Failed to set password for {username}",
        )

    def delete(self, username: str) -> None:
        self.runner.run(
            ["htpasswd", "-D", str(self.path), username],
            sudo=True,
            check=True,
            error_message=f"Failed to delete user {username}",
        )


@dataclass
class UserOutcome:
    username: str
    action: str
    success: bool
    message: str = ""


class CredentialReconciler:
    """Creates, updates or skips htpasswd entries for a list of users.

    Args:
        store: The htpasswd store to modify.
        prompter: Source of passwords and of the per-user decision.
        lock_path: Lock file serializing writes between concurrent invocations.
    """

    def __init__(self, store: HtpasswdStore, prompter: Prompter, lock_path: Path | None = None):
        self.store = store
        self.prompter = prompter
        self.lock_path = lock_path

    def reconcile(self, usernames: list[str]) -> list[UserOutcome]:
        if self.lock_path is None:
            return self._reconcile(usernames)
        with FileLock(str(self.lock_path), timeout=LOCK_TIMEOUT):
            return self._reconcile(usernames)

    def _reconcile(self, usernames: list[str]) -> list[UserOutcome]:
        outcomes = []
        for username in usernames:
            if self.store.exists(username):
                ui_print(f"User '{escape(username)}' already exists")
                action = self.prompter.choose(
                    "existing_user_action",
                    f"Action for '{escape(username)}'",
                    list(USER_ACTIONS),
                    default="skip",
                )
                if action not in USER_ACTIONS:
                    ui_print(f"Invalid choice '{action}', skipping user {escape(username)}", "warning")
                    action = "skip"
            else:
                action = "create"
            outcomes.append(self.apply(username, action))

        failed = [o for o in outcomes if not o.success]
        if failed:
            logger.warning(
                "Credential updates failed for: %s", ", ".join(o.username for o in failed)
            )
        return outcomes

    def apply(self, username: str, action: str) -> UserOutcome:
        """Carry out one action (create, change, skip, recreate) for one user."""
        if action == "skip":
            ui_print(f"Skipping user: {escape(username)}")
            return UserOutcome(username, action, True, "unchanged")

        password = self.prompter.password(username)
        if not password:
            ui_print(f"No password provided for {escape(username)}", "error")
            return UserOutcome(username, action, False, "no password provided")

        if action == "recreate":
            try:
                self.store.delete(username)
            except CommandError as e:
                logger.debug("Delete before recreate of %s failed: %s", username, e)

        try:
            self.store.set_password(username, password, create=not self.store.file_exists())
        except CommandError as e:
            ui_print(escape(str(e)), "error")
            return UserOutcome(username, action, False, str(e))

        verb = {"create": "Created", "change": "Updated", "recreate": "Recreated"}.get(action, "Updated")
        ui_print(f"{verb} user: {escape(username)}", "success")
        return UserOutcome(username, action, True, verb.lower())

    def remove(self, username: str) -> UserOutcome:
        try:
            self.store.delete(username)
        except CommandError as e:
            ui_print(escape(str(e)), "error")
            return UserOutcome(username, "delete", False, str(e))
        ui_print(f"Removed user: {escape(username)}", "success")
        return UserOutcome(username, "delete", True, "removed")
