"""Remediation decision selection.

A decision comes from exactly one injected DecisionSource. Precedence when
sources are built from configuration:

1. Short code (``--remediation``): PublicNetwork, PrivateEndpoint,
   PolicyExemption, Custom, or the numeric aliases 1-4 (case-insensitive)
2. Descriptive text (``--remediation-text``), mapped by keyword
3. Interactive numbered menu (click prompt)
4. Nothing: remediation is skipped

An interactive answer that does not name a menu entry yields no decision.
The engine never guesses.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import click

from .config import Config

logger = logging.getLogger(__name__)


class RemediationChoice(str, Enum):
    """What the operator asked for."""

    PUBLIC_NETWORK = "PublicNetwork"
    PRIVATE_ENDPOINT = "PrivateEndpoint"
    POLICY_EXEMPTION = "PolicyExemption"
    CUSTOM = "Custom"


class RemediationAction(str, Enum):
    """What the decision engine will actually do."""

    ENABLE_PUBLIC_NETWORK = "EnablePublicNetwork"
    PRIVATE_ENDPOINT_GUIDANCE = "PrivateEndpointGuidance"
    PRIVATE_ENDPOINT_AUTOMATED = "PrivateEndpointAutomated"
    POLICY_EXEMPTION_GUIDANCE = "PolicyExemptionGuidance"
    CUSTOM = "Custom"


NO_CHOICE_MESSAGE = "No valid choice; remediation skipped."

# Menu order defines the numeric aliases
MENU: tuple[tuple[RemediationChoice, str], ...] = (
    (RemediationChoice.PUBLIC_NETWORK, "Enable public network access on the staging storage account"),
    (RemediationChoice.PRIVATE_ENDPOINT, "Use a private endpoint for the staging storage account"),
    (RemediationChoice.POLICY_EXEMPTION, "Request a policy exemption for the staging storage account"),
    (RemediationChoice.CUSTOM, "Custom remediation (record text only)"),
)

SHORT_CODES: dict[str, RemediationChoice] = {
    **{choice.value.lower(): choice for choice, _ in MENU},
    **{str(number): choice for number, (choice, _) in enumerate(MENU, start=1)},
}

# Keywords for descriptive text, checked in order
KEYWORDS: tuple[tuple[tuple[str, ...], RemediationChoice], ...] = (
    (("private endpoint", "private link", "privatelink", "private-endpoint"), RemediationChoice.PRIVATE_ENDPOINT),
    (("exemption", "exempt", "waiver"), RemediationChoice.POLICY_EXEMPTION),
    (("public network", "public access", "enable public", "open network"), RemediationChoice.PUBLIC_NETWORK),
)


def parse_short_code(code: str) -> RemediationChoice | None:
    return SHORT_CODES.get(code.strip().lower())


@dataclass(frozen=True)
class Decision:
    """A remediation choice and where it came from."""

    choice: RemediationChoice
    source: str
    text: str | None = None

    def action(self, create_private_endpoint: bool) -> RemediationAction:
        match self.choice:
            case RemediationChoice.PUBLIC_NETWORK:
                return RemediationAction.ENABLE_PUBLIC_NETWORK
            case RemediationChoice.PRIVATE_ENDPOINT:
                if create_private_endpoint:
                    return RemediationAction.PRIVATE_ENDPOINT_AUTOMATED
                return RemediationAction.PRIVATE_ENDPOINT_GUIDANCE
            case RemediationChoice.POLICY_EXEMPTION:
                return RemediationAction.POLICY_EXEMPTION_GUIDANCE
            case _:
                return RemediationAction.CUSTOM


class DecisionSource(Protocol):
    """Supplies at most one remediation decision."""

    name: str

    def decide(self) -> Decision | None:
        ...


class PresetDecisionSource:
    """Fixed decision, for callers that already know the answer."""

    name = "preset"

    def __init__(self, choice: RemediationChoice, text: str | None = None) -> None:
        self._choice = choice
        self._text = text

    def decide(self) -> Decision | None:
        return Decision(self._choice, self.name, self._text)


class ShortCodeDecisionSource:
    name = "short-code"

    def __init__(self, code: str, text: str | None = None) -> None:
        self._code = code
        self._text = text

    def decide(self) -> Decision | None:
        choice = parse_short_code(self._code)
        if choice is None:
            logger.warning("Unknown remediation short code", extra={"code": self._code})
            return None
        return Decision(choice, self.name, self._text)


class DescriptiveDecisionSource:
    """Maps free text to a choice by keyword; anything else is Custom."""

    name = "descriptive"

    def __init__(self, text: str) -> None:
        self._text = text

    def decide(self) -> Decision | None:
        text = self._text.strip()
        if not text:
            return None
        lowered = text.lower()
        for keywords, choice in KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return Decision(choice, self.name, text)
        return Decision(RemediationChoice.CUSTOM, self.name, text)


class InteractiveDecisionSource:
    """Numbered menu on the terminal."""

    name = "interactive"

    def __init__(
        self,
        prompt: Callable[..., str] = click.prompt,
        echo: Callable[[str], None] = click.echo,
    ) -> None:
        self._prompt = prompt
        self._echo = echo

    def decide(self) -> Decision | None:
        self._echo("Select a remediation for the staging storage account:")
        for number, (choice, description) in enumerate(MENU, start=1):
            self._echo(f"  {number}) {choice.value}: {description}")

        try:
            answer = self._prompt("Choice", default="", show_default=False)
            choice = parse_short_code(str(answer))
            text = None
            if choice == RemediationChoice.CUSTOM:
                text = self._prompt("Describe the remediation", default="", show_default=False) or None
        except (click.exceptions.Abort, EOFError):
            # No terminal input (closed stdin, Ctrl-C): same as no answer
            logger.warning("Remediation prompt aborted")
            choice = None

        if choice is None:
            self._echo(NO_CHOICE_MESSAGE)
            return None
        return Decision(choice, self.name, text)


class NoDecisionSource:
    """Used when nothing was requested and no terminal is available."""

    name = "none"

    def decide(self) -> Decision | None:
        return None


def select_source(config: Config) -> DecisionSource:
    """Pick the highest-precedence source the configuration provides."""
    if config.remediation_code:
        return ShortCodeDecisionSource(config.remediation_code, config.remediation_text)
    if config.remediation_text:
        return DescriptiveDecisionSource(config.remediation_text)
    if config.interactive:
        if sys.stdin is not None and sys.stdin.isatty():
            return InteractiveDecisionSource()
        logger.info("Interactive remediation requested but stdin is not a terminal; skipping menu")
    return NoDecisionSource()
