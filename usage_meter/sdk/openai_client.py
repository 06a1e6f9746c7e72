"""
Metered OpenAI client wrapper.

Gates each chat completion on the account's entitlement and records
its cost afterwards, without modifying the completion itself.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.engine import CompletionReceipt, MeteringEngine
from ..core.entitlement import Decision, PlanState
from ..storage.models import OperationKind


class MeteredOpenAI:
    """OpenAI client wrapper that enforces quotas and records usage.

    The request path is: require_entitlement -> chat completion ->
    record_completion with the provider-reported token counts. A denied
    request raises EntitlementDenied before any tokens are spent.
    """

    def __init__(
        self,
        engine: MeteringEngine,
        model: str,
        client: Optional[OpenAI] = None
    ):
        """Initialize metered OpenAI client.

        Args:
            engine: Metering engine that gates and records requests
            model: OpenAI model name (required)
            client: OpenAI client (defaults to ``OpenAI()`` from the environment)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.engine = engine
        self.model = model
        self.client = client or OpenAI()
        self.last_decision: Optional[Decision] = None
        self.last_receipt: Optional[CompletionReceipt] = None

    def chat(
        self,
        account_id: str,
        plan: PlanState,
        messages: List[Dict[str, str]],
        operation_kind=OperationKind.CHAT_QUERY,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        now: Optional[datetime] = None,
        **kwargs: Any
    ):
        """Create a chat completion on behalf of an account.

        Args:
            account_id: Account making the request
            plan: Plan snapshot from the billing layer
            messages: List of message dictionaries (required)
            operation_kind: Quota the request counts against
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            now: Evaluation time (defaults to current UTC time)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty or usage is missing
            EntitlementDenied: If the quota or cost ceiling is exhausted
            StorageUnavailable: If the cost ceiling cannot be verified
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        self.last_decision = self.engine.require_entitlement(account_id, operation_kind, plan, now)

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

        self.last_receipt = self.engine.record_completion(
            account_id,
            operation_kind,
            self._billed_model(getattr(response, "model", None)),
            usage.prompt_tokens,
            usage.completion_tokens,
            now=now,
        )
        return response

    def _billed_model(self, reported: Optional[str]) -> str:
        """Model to price: the one the provider ran, if we have rates for it.

        A reported snapshot we cannot price falls back to the requested
        model rather than the table default.
        """
        table = self.engine.calculator.table
        if isinstance(reported, str) and table.find_pricing(reported) is not None:
            return reported
        return self.model
