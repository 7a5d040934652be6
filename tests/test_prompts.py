"""Tests for llamadeploy/prompts.py."""

from unittest.mock import patch

import pytest

from llamadeploy.prompts import InteractivePrompter, NonInteractivePrompter, Prompter, password_env_var


class TestPasswordEnvVar:
    def test_simple_name(self):
        assert password_env_var("alice") == "LLAMA_PASSWORD_ALICE"

    def test_special_characters(self):
        assert password_env_var("bob.smith-2") == "LLAMA_PASSWORD_BOB_SMITH_2"


class TestNonInteractivePrompter:
    def test_confirm_uses_answer(self):
        prompter = NonInteractivePrompter({"reinstall_runtime": True})
        assert prompter.confirm("reinstall_runtime", "Reinstall ROCm?") is True

    def test_confirm_falls_back_to_default(self):
        prompter = NonInteractivePrompter({})
        assert prompter.confirm("reclone_source", "Remove and re-clone?") is False
        assert prompter.confirm("reclone_source", "Remove and re-clone?", default=True) is True

    def test_records_asked_keys(self):
        prompter = NonInteractivePrompter({})
        prompter.confirm("a", "?")
        prompter.choose("b", "?", ["x", "y"], default="x")
        prompter.ask("c", "?")
        assert prompter.asked == ["a", "b", "c"]

    def test_choose(self):
        prompter = NonInteractivePrompter({"existing_user_action": "recreate"})
        assert prompter.choose("existing_user_action", "?", ["change", "skip", "recreate"], "skip") == "recreate"
        assert NonInteractivePrompter().choose("existing_user_action", "?", ["skip"], "skip") == "skip"

    def test_ask_empty_answer_uses_default(self):
        prompter = NonInteractivePrompter({"tunnel_hostname": ""})
        assert prompter.ask("tunnel_hostname", "Hostname?", default="llama.example.com") == "llama.example.com"

    def test_password_from_mapping(self):
        prompter = NonInteractivePrompter(passwords={"alice": "s3cret"}, environ={})
        assert prompter.password("alice") == "s3cret"

    def test_password_from_environment(self):
        prompter = NonInteractivePrompter(environ={"LLAMA_PASSWORD_BOB": "hunter2"})
        assert prompter.password("bob") == "hunter2"
        assert prompter.password("carol") is None

    def test_secret(self):
        prompter = NonInteractivePrompter({"test_password": "pw"})
        assert prompter.secret("test_password", "Password?") == "pw"
        assert NonInteractivePrompter().secret("test_password", "Password?") is None


class TestInteractivePrompter:
    @patch("llamadeploy.prompts.Prompt.ask")
    def test_password_must_match(self, mock_ask):
        mock_ask.side_effect = ["one", "two"]
        assert InteractivePrompter().password("alice") is None

    @patch("llamadeploy.prompts.Prompt.ask")
    def test_password_confirmed(self, mock_ask):
        mock_ask.side_effect = ["same", "same"]
        assert InteractivePrompter().password("alice") == "same"

    @patch("llamadeploy.prompts.Confirm.ask")
    def test_confirm_passes_default(self, mock_confirm):
        mock_confirm.return_value = False
        assert InteractivePrompter().confirm("k", "Continue?", default=False) is False
        assert mock_confirm.call_args[1]["default"] is False


class TestPrompter:
    def test_is_abstract(self):
        with pytest.raises(TypeError):
            Prompter()

    def test_partial_subclass_is_abstract(self):
        class ConfirmOnly(Prompter):
            def confirm(self, key, question, default=False):
                return default

        with pytest.raises(TypeError):
            ConfirmOnly()
