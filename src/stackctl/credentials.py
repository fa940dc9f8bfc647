"""Credential generation, validation and per-operation storage.

Secrets live in a :class:`CredentialContext` created for one lifecycle
operation and cleared when it ends. They are handed to the code that needs
them by parameter; nothing is exported into the process environment.
"""
from __future__ import annotations

import secrets
import string
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

import typer

from .config import GENERATE_TOKEN, PROMPT_TOKEN
from .errors import PreconditionError

PASSWORD_SYMBOLS = "!@#$%^&*()_+-="
PASSWORD_ALPHABET = string.ascii_letters + string.digits + PASSWORD_SYMBOLS
GENERATED_PASSWORD_LENGTH = 32
MIN_PASSWORD_LENGTH = 12
PROMPT_ATTEMPTS = 3

Prompter = Callable[[str], str]


class CredentialError(PreconditionError):
    """Raised when a required secret cannot be obtained."""


def password_problems(password: str, *, min_length: int = MIN_PASSWORD_LENGTH) -> list[str]:
    """Return the policy rules *password* violates (empty when it is strong)."""
    problems: list[str] = []
    if len(password) < min_length:
        problems.append(f"at least {min_length} characters")
    if not any(char.isupper() for char in password):
        problems.append("an uppercase letter")
    if not any(char.islower() for char in password):
        problems.append("a lowercase letter")
    if not any(char.isdigit() for char in password):
        problems.append("a digit")
    if all(char.isalnum() for char in password):
        problems.append("a special character")
    return problems


def is_strong_password(password: str, *, min_length: int = MIN_PASSWORD_LENGTH) -> bool:
    """Return True when *password* satisfies the strength policy."""
    return not password_problems(password, min_length=min_length)


def generate_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    """Return a random password that always satisfies the strength policy."""
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Generated passwords must be at least {MIN_PASSWORD_LENGTH} long.")
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(PASSWORD_SYMBOLS),
    ]
    chars = required + [secrets.choice(PASSWORD_ALPHABET) for _ in range(length - len(required))]
    # Shuffle so the guaranteed classes are not always in front.
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def generate_secret_key() -> str:
    """Return a signing key for the application."""
    return secrets.token_urlsafe(50)


@dataclass
class CredentialContext:
    """In-memory secrets scoped to a single lifecycle operation."""

    _values: dict[str, str] = field(default_factory=dict, repr=False)
    generated: set[str] = field(default_factory=set)

    def __enter__(self) -> CredentialContext:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._values))

    def get(self, name: str) -> str | None:
        """Return the secret called *name* if it has been set."""
        return self._values.get(name)

    def require(self, name: str) -> str:
        """Return the secret called *name* or raise :class:`CredentialError`."""
        value = self._values.get(name)
        if not value:
            raise CredentialError(f"Credential '{name}' has not been provided.")
        return value

    def set(self, name: str, value: str, *, generated: bool = False) -> None:
        """Store *value* under *name*."""
        self._values[name] = value
        if generated:
            self.generated.add(name)

    def clear(self) -> None:
        """Forget every secret held by the context."""
        for name in list(self._values):
            self._values[name] = ""
        self._values.clear()
        self.generated.clear()


def _typer_prompter(message: str) -> str:
    return str(typer.prompt(message, hide_input=True, confirmation_prompt=True))


@dataclass
class CredentialProvider:
    """Resolve named secrets from configuration tokens.

    ``<generate>`` produces a fresh value, ``<prompt>`` asks the operator and
    anything else is used literally.
    """

    prompter: Prompter | None = _typer_prompter
    attempts: int = PROMPT_ATTEMPTS

    def resolve(
        self,
        context: CredentialContext,
        name: str,
        token: str | None,
        *,
        label: str | None = None,
        kind: str = "password",
    ) -> str:
        """Resolve *token* into a secret, store it in *context* and return it."""
        existing = context.get(name)
        if existing:
            return existing
        text = (token or "").strip()
        if not text or text == GENERATE_TOKEN:
            value = generate_secret_key() if kind == "secret_key" else generate_password()
            context.set(name, value, generated=True)
            return value
        if text == PROMPT_TOKEN:
            value = self.prompt(label or name, check_strength=kind == "password")
            context.set(name, value)
            return value
        context.set(name, text)
        return text

    def prompt(self, label: str, *, check_strength: bool = True) -> str:
        """Ask the operator for *label*, enforcing the strength policy."""
        if self.prompter is None:
            raise CredentialError(f"{label} is required but interactive prompts are disabled.")
        for _ in range(self.attempts):
            value = self.prompter(f"Enter {label}")
            if not value:
                continue
            if not check_strength:
                return value
            problems = password_problems(value)
            if not problems:
                return value
            typer.echo(f"{label} must contain {', '.join(problems)}.", err=True)
        raise CredentialError(f"No acceptable value supplied for {label}.")


__all__ = [
    "CredentialContext",
    "CredentialError",
    "CredentialProvider",
    "generate_password",
    "generate_secret_key",
    "is_strong_password",
    "password_problems",
]
