import json
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Protocol, Sequence

from creditmeter.errors import UnknownModelError
from creditmeter.ledger import to_nano_dollars
from creditmeter.models import TokenUsage

_TOKENS_PER_MILLION = Decimal(1_000_000)

# rough size of a token in characters, used for pre-call estimates
_CHARS_PER_TOKEN = 4


@dataclass(frozen=True, slots=True)
class BilledRequest:
    """
    BilledRequest is what the caller is about to send to the
    model, used only to estimate cost before the call.
    """

    messages: "Sequence[Mapping[str, Any]]" = ()
    system_prompt: "str" = ""
    tool_definitions: "Sequence[Mapping[str, Any]]" = ()

    def character_count(self) -> "int":
        count = len(self.system_prompt)
        for message in self.messages:
            content = message.get("content", "")
            count += len(content if isinstance(content, str) else json.dumps(content))
        if self.tool_definitions:
            count += len(json.dumps(list(self.tool_definitions), default=str))
        return count


@dataclass(frozen=True, slots=True)
class ModelPrice:
    """
    prices in USD per one million tokens. Reasoning tokens are
    billed at the output price unless set.
    """

    input: "Decimal"
    output: "Decimal"
    cached_input: "Decimal | None" = None
    reasoning: "Decimal | None" = None


DEFAULT_PRICES: "dict[tuple[str, str], ModelPrice]" = {
    ("openai", "gpt-4o"): ModelPrice(
        Decimal("2.50"), Decimal("10.00"), cached_input=Decimal("1.25")
    ),
    ("openai", "gpt-4o-mini"): ModelPrice(
        Decimal("0.15"), Decimal("0.60"), cached_input=Decimal("0.075")
    ),
    ("anthropic", "claude-sonnet-4"): ModelPrice(
        Decimal("3.00"), Decimal("15.00"), cached_input=Decimal("0.30")
    ),
    ("google", "gemini-2.5-flash"): ModelPrice(
        Decimal("0.30"), Decimal("2.50"), cached_input=Decimal("0.075")
    ),
}


class CostModel(Protocol):
    """
    CostModel turns a pending request into an estimated cost and
    measured usage into an actual cost, both in nano-dollars.
    """

    def estimate_cost(
        self, provider: "str", model: "str", request: "BilledRequest"
    ) -> "int": ...

    def actual_cost(
        self, provider: "str", model: "str", usage: "TokenUsage"
    ) -> "int": ...


@dataclass
class PriceTable:
    prices: "dict[tuple[str, str], ModelPrice]" = field(
        default_factory=lambda: dict(DEFAULT_PRICES)
    )
    # completion budget assumed when estimating before the call
    max_output_tokens: "int" = 1024

    def price_for(self, provider: "str", model: "str") -> "ModelPrice":
        price = self.prices.get((provider, model))
        if price is None:
            raise UnknownModelError(provider, model)
        return price

    def estimate_cost(
        self, provider: "str", model: "str", request: "BilledRequest"
    ) -> "int":
        price = self.price_for(provider, model)
        prompt_tokens = math.ceil(request.character_count() / _CHARS_PER_TOKEN)
        dollars = (
            Decimal(prompt_tokens) * price.input
            + Decimal(self.max_output_tokens) * price.output
        ) / _TOKENS_PER_MILLION
        return to_nano_dollars(dollars)

    def actual_cost(
        self, provider: "str", model: "str", usage: "TokenUsage"
    ) -> "int":
        price = self.price_for(provider, model)
        cached = min(usage.cached_prompt_tokens, usage.prompt_tokens)
        uncached = usage.prompt_tokens - cached

        cached_price = price.cached_input if price.cached_input is not None else price.input
        reasoning_price = price.reasoning if price.reasoning is not None else price.output

        dollars = (
            Decimal(uncached) * price.input
            + Decimal(cached) * cached_price
            + Decimal(usage.completion_tokens) * price.output
            + Decimal(usage.reasoning_tokens) * reasoning_price
        ) / _TOKENS_PER_MILLION
        return max(to_nano_dollars(dollars), 0)
