"""
Guarded OpenAI client wrapper.

Runs chat completions through admission control: rate limit, budget,
response cache, then the real call with its cost appended to the ledger.
"""

import json
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.admission import TEXT_CATEGORY, AdmissionController, Outcome
from ..core.errors import BudgetExceeded, LedgerUnavailable, RateLimited
from ..core.pricing import PRICING_TABLE, TokenUsage, calculate_text_cost

# Rough prompt size estimate used before the real usage is known.
_CHARS_PER_TOKEN = 4


class GuardedOpenAI:
    """OpenAI client wrapper that enforces admission control per principal.

    Denials are raised as RateLimited, BudgetExceeded or LedgerUnavailable.
    Identical requests within the cache TTL are served without a new call
    and without being billed again.
    """

    def __init__(
        self,
        controller: AdmissionController,
        model: str,
        operation: str,
        category: str = TEXT_CATEGORY,
        client: Optional[OpenAI] = None,
    ):
        """Initialize guarded OpenAI client.

        Args:
            controller: Process-wide admission controller
            model: OpenAI model name (required, must be priced)
            operation: Operation name recorded on ledger rows (required)
            category: Rate limit category
            client: Optional preconfigured OpenAI client

        Raises:
            ValueError: If model or operation is missing, or model is not priced
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not operation or not operation.strip():
            raise ValueError("operation is required and cannot be empty")
        PRICING_TABLE.get_text_pricing(model)

        self.controller = controller
        self.model = model
        self.operation = operation
        self.category = category
        self.client = client or OpenAI()

    def chat(
        self,
        principal: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion on behalf of ``principal``.

        Args:
            principal: User the call is billed to
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, possibly served from cache

        Raises:
            ValueError: If messages is empty or the response lacks usage
            RateLimited: If the principal is over its request rate
            BudgetExceeded: If the call would exceed the monthly budget
            LedgerUnavailable: If spend could not be verified
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request_key = json.dumps(
            {
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "extra": kwargs,
            },
            sort_keys=True,
            default=str,
        )

        def call():
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
            usage = response.usage
            if not usage:
                raise ValueError("OpenAI response missing usage information")
            cost = calculate_text_cost(
                self.model,
                TokenUsage(
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                ),
            )
            return response, cost

        result = self.controller.execute(
            principal,
            self.category,
            request_key,
            call,
            estimated_cost_usd=self.estimate_cost(messages, max_tokens),
            model=self.model,
            operation=self.operation,
        )

        decision = result.decision
        if result.outcome == Outcome.RATE_LIMITED:
            raise RateLimited(decision.reason, decision.retry_after_seconds)
        if result.outcome == Outcome.BUDGET_EXCEEDED:
            if not decision.ledger_available:
                raise LedgerUnavailable(decision.reason)
            raise BudgetExceeded(decision.reason, decision.total_spent, decision.remaining)
        return result.value

    def estimate_cost(self, messages: List[Dict[str, str]], max_tokens: Optional[int]) -> float:
        """Pre-call cost estimate from prompt length and the completion cap."""
        prompt_chars = sum(len(str(m.get("content", ""))) for m in messages)
        usage = TokenUsage(
            prompt_tokens=prompt_chars // _CHARS_PER_TOKEN,
            completion_tokens=max_tokens or 0,
        )
        return calculate_text_cost(self.model, usage)
