"""Tests for credential resolution and the password policy."""
from __future__ import annotations

import pytest

from stackctl.credentials import (
    CredentialContext,
    CredentialError,
    CredentialProvider,
    generate_password,
    is_strong_password,
    password_problems,
)


def test_generated_passwords_satisfy_policy() -> None:
    """Generated passwords are long and always pass the policy."""
    for _ in range(25):
        password = generate_password()
        assert len(password) == 32
        assert is_strong_password(password)


def test_generate_password_rejects_short_length() -> None:
    """Generating a password shorter than the policy minimum is refused."""
    with pytest.raises(ValueError):
        generate_password(8)


def test_password_problems_lists_each_rule() -> None:
    """Every violated rule is reported."""
    assert password_problems("short") == [
        "at least 12 characters",
        "an uppercase letter",
        "a digit",
        "a special character",
    ]
    assert password_problems("S3cure!Passw0rd") == []


def test_resolve_generate_and_literal_tokens() -> None:
    """``<generate>`` creates a value, literals are used as-is."""
    provider = CredentialProvider(prompter=None)
    context = CredentialContext()

    generated = provider.resolve(context, "db", "<generate>")
    secret = provider.resolve(context, "secret", None, kind="secret_key")
    literal = provider.resolve(context, "admin", "S3cure!Passw0rd")

    assert is_strong_password(generated)
    assert len(secret) >= 50
    assert literal == "S3cure!Passw0rd"
    assert context.generated == {"db", "secret"}
    # Already-resolved names are returned unchanged.
    assert provider.resolve(context, "db", "<generate>") == generated


def test_prompt_retries_weak_answers(capsys: pytest.CaptureFixture[str]) -> None:
    """Weak answers are rejected until a strong one is given."""
    answers = iter(["weak", "", "S3cure!Passw0rd"])
    provider = CredentialProvider(prompter=lambda message: next(answers))
    context = CredentialContext()

    value = provider.resolve(context, "db", "<prompt>", label="database password")

    assert value == "S3cure!Passw0rd"
    assert "database password must contain" in capsys.readouterr().err
    assert "db" not in context.generated


def test_prompt_gives_up_after_attempts() -> None:
    """Running out of attempts raises CredentialError."""
    provider = CredentialProvider(prompter=lambda message: "weak", attempts=2)

    with pytest.raises(CredentialError) as excinfo:
        provider.prompt("admin password")

    assert "No acceptable value supplied for admin password" in str(excinfo.value)


def test_prompt_token_without_prompter_fails() -> None:
    """Non-interactive runs cannot satisfy ``<prompt>``."""
    provider = CredentialProvider(prompter=None)

    with pytest.raises(CredentialError):
        provider.resolve(CredentialContext(), "db", "<prompt>")


def test_context_clears_on_exit() -> None:
    """Leaving the context forgets every secret."""
    with CredentialContext() as context:
        context.set("db", "value", generated=True)
        assert context.require("db") == "value"
        assert list(context) == ["db"]

    assert "db" not in context
    assert context.generated == set()
    with pytest.raises(CredentialError):
        context.require("db")
