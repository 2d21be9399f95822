"""Workflow error hierarchy and the error classifier.

``classify`` turns any raised failure into a StructuredError with a
user-facing message, guidance, fix steps and an error code. Classification
is advisory for retries: node executors always re-raise non-retriable.
"""

import re
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

import httpx


@dataclass
class StructuredError:
    """User-facing error produced by classify()."""
    message: str
    guidance: str = ""
    fix_steps: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    retriable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "guidance": self.guidance,
            "fixSteps": list(self.fix_steps),
            "errorCode": self.error_code,
            "retriable": self.retriable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructuredError":
        return cls(
            message=data.get("message", ""),
            guidance=data.get("guidance", ""),
            fix_steps=list(data.get("fixSteps") or data.get("fix_steps") or []),
            error_code=data.get("errorCode") or data.get("error_code"),
            retriable=bool(data.get("retriable", False)),
        )

    def with_model_identifier(self, model: Optional[str]) -> "StructuredError":
        """Append the attempted model id to MODEL_NOT_FOUND messages."""
        if self.error_code != "MODEL_NOT_FOUND" or not model:
            return self
        data = asdict(self)
        data["message"] = f"{self.message} (model: {model})"
        return StructuredError(**data)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class WorkflowError(Exception):
    """Base exception for the execution engine."""


class ConfigurationError(WorkflowError):
    """A required node configuration field is missing or invalid."""

    def __init__(self, message: str, error_code: str = "INVALID_CONFIGURATION",
                 guidance: Optional[str] = None, fix_steps: Optional[List[str]] = None):
        self.error_code = error_code
        self.guidance = guidance or "Open the node settings and correct the highlighted field."
        self.fix_steps = fix_steps or []
        super().__init__(message)


class NodeExecutionError(WorkflowError):
    """Terminal, non-retriable failure of one node; carries the classified error."""

    non_retriable = True

    def __init__(self, error: StructuredError, node_id: Optional[str] = None):
        self.error = error
        self.node_id = node_id
        # Set by the graph runner when the failure ends a run
        self.run_result = None
        super().__init__(error.message)


class ExecutorNotFoundError(WorkflowError):
    """No executor is registered for a node type. A programming error, never classified."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor found for node type: {node_type}")


class WorkflowCycleError(WorkflowError):
    """The workflow graph contains a cycle."""

    def __init__(self, node_ids: List[str]):
        self.node_ids = node_ids
        super().__init__(f"Workflow contains a cycle involving nodes: {', '.join(node_ids)}")


class ScheduleValidationError(WorkflowError):
    """A schedule save request was rejected."""


class ScheduleNotFoundError(WorkflowError):
    """The requested schedule does not exist."""


# =============================================================================
# CLASSIFIER
# =============================================================================

@dataclass(frozen=True)
class ProviderDetails:
    name: str
    account_label: str
    credential_label: str
    node_label: str
    key_portal: str
    billing_portal: str
    key_prefix_hint: Optional[str] = None
    suggested_model: Optional[str] = None


PROVIDERS: Dict[str, ProviderDetails] = {
    "openai": ProviderDetails(
        "OpenAI", "OpenAI account", "OpenAI credential", "OpenAI node",
        "your OpenAI account settings", "the OpenAI billing page", "sk-", "GPT-4 or GPT-4o"),
    "anthropic": ProviderDetails(
        "Anthropic", "Anthropic Console", "Anthropic credential", "Anthropic node",
        "the Anthropic Console", "the Anthropic billing page", "sk-ant-",
        "Claude 3.5 Sonnet or Claude 3 Haiku"),
    "gemini": ProviderDetails(
        "Gemini", "Google AI Studio project", "Gemini credential", "Gemini node",
        "Google AI Studio", "the Google AI Studio billing page", "AIza", "Gemini 2.0 Flash"),
    "groq": ProviderDetails(
        "Groq", "Groq account", "Groq credential", "Groq node",
        "GroqCloud console (https://console.groq.com/keys)", "the Groq billing page", "gsk_"),
    "huggingface": ProviderDetails(
        "Hugging Face", "Hugging Face account", "Hugging Face credential", "Hugging Face node",
        "your Hugging Face access token settings", "the Hugging Face billing page", "hf_"),
    "openrouter": ProviderDetails(
        "OpenRouter", "OpenRouter account", "OpenRouter credential", "OpenRouter node",
        "the OpenRouter keys page", "the OpenRouter credits page", "sk-or-"),
}

DEFAULT_PROVIDER = "openai"
FALLBACK_MESSAGE_LIMIT = 400

Builder = Callable[[ProviderDetails], StructuredError]


@dataclass(frozen=True)
class ErrorRule:
    """First rule whose predicate matches the lowercased message wins."""
    code: str
    matches: Callable[[str], bool]
    build: Builder


def _any(*needles: str) -> Callable[[str], bool]:
    return lambda text: any(n in text for n in needles)


def _invalid_key(p: ProviderDetails) -> StructuredError:
    steps = [
        f"Go to {p.key_portal}",
        "Navigate to the API keys section",
        "Create a new API key or copy an existing one",
        f"Update your {p.credential_label} in the Credentials page",
    ]
    if p.key_prefix_hint:
        steps.append(f"Make sure the API key starts with '{p.key_prefix_hint}' "
                     "or matches the expected prefix for this provider.")
    return StructuredError(
        message=f"Invalid {p.name} API Key",
        guidance=f"Your {p.name} API key is invalid or incorrect. Please verify your API key and try again.",
        fix_steps=steps,
        error_code="INVALID_API_KEY",
    )


def _quota(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message=f"{p.name} API Quota Exceeded",
        guidance=f"Your {p.account_label} has insufficient credits or quota. Please add credits to your account.",
        fix_steps=[
            f"Go to {p.billing_portal}",
            "Add credits or increase the quota for the API",
            "Wait a few minutes for the changes to take effect",
            "Try executing the workflow again",
        ],
        error_code="INSUFFICIENT_QUOTA",
    )


def _rate_limit(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message=f"{p.name} API Rate Limit Exceeded",
        guidance=f"You've made too many requests to the {p.name} API. Please wait a moment and try again.",
        fix_steps=[
            "Wait 1-2 minutes before trying again",
            f"Consider upgrading your {p.account_label} plan for higher rate limits",
            "Reduce the frequency of workflow executions",
        ],
        error_code="RATE_LIMIT",
        retriable=True,
    )


def _model_not_found(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message=f"{p.name} Model Identifier Error",
        guidance=(f"The requested {p.name} model identifier is invalid or not available. This could be "
                  "due to: model deprecation, incorrect model name, or access restrictions."),
        fix_steps=[
            f"Verify the model identifier is correct in your {p.account_label}",
            f"Check {p.key_portal} for the latest available model names",
            (f"Try using a supported model (e.g., {p.suggested_model})" if p.suggested_model
             else "Try using a different model from the available list"),
            f"Ensure your {p.account_label} has access to the requested model",
        ],
        error_code="MODEL_NOT_FOUND",
    )


def _is_model_error(text: str) -> bool:
    return (
        ("model" in text and ("not found" in text or "does not exist" in text))
        or "invalid model" in text
        or "model_not_found" in text
        or "model_id_invalid" in text
        or ("unknown" in text and "model" in text)
    )


def _credential_missing(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message=f"{p.name} Credential Not Configured",
        guidance=f"The {p.node_label} requires a credential to be set up. Please configure your {p.name} API key.",
        fix_steps=[
            f"Double-click the {p.node_label} to open settings",
            f"Select or create a {p.credential_label}",
            "Make sure the credential has a valid API key",
            "Save the node configuration",
        ],
        error_code="CREDENTIAL_NOT_FOUND",
    )


def _variable_name_missing(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message="Variable Name Not Set",
        guidance="This node requires a variable name to store the result.",
        fix_steps=[
            "Double-click the node to open settings",
            "Enter a variable name (e.g., 'response', 'result')",
            "Save the node configuration",
        ],
        error_code="VARIABLE_NAME_MISSING",
    )


def _prompt_missing(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message="User Prompt Not Set",
        guidance=f"The {p.node_label} requires a user prompt to generate a response.",
        fix_steps=[
            f"Double-click the {p.node_label} to open settings",
            "Enter a user prompt in the 'User Prompt' field",
            "Save the node configuration",
        ],
        error_code="USER_PROMPT_MISSING",
    )


def _decryption(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message="Credential Decryption Failed",
        guidance=(f"There was an issue decrypting your {p.credential_label}. "
                  "This might indicate the credential was corrupted."),
        fix_steps=[
            "Go to the Credentials page",
            f"Delete the existing {p.credential_label}",
            f"Create a new {p.credential_label} with your API key",
            f"Update the {p.node_label} to use the new credential",
        ],
        error_code="DECRYPTION_ERROR",
    )


def _network(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message="Network Connection Error",
        guidance="Unable to reach the remote service. Please check your internet connection.",
        fix_steps=[
            "Check your internet connection",
            "Verify the remote service's status page",
            "Wait a moment and try again",
            "If the problem persists, contact support",
        ],
        error_code="NETWORK_ERROR",
        retriable=True,
    )


def _cycle(p: ProviderDetails) -> StructuredError:
    return StructuredError(
        message="Workflow Contains a Cycle",
        guidance=("Your workflow has a circular dependency. Nodes connected in a loop prevent the "
                  "workflow from executing in a valid order."),
        fix_steps=[
            "Review your workflow connections",
            "Look for nodes that connect back to earlier nodes in the flow",
            "Remove any connections that create a loop",
            "Use a Loop node to repeat work instead of wiring a cycle",
        ],
        error_code="WORKFLOW_CYCLE",
    )


RULES: List[ErrorRule] = [
    ErrorRule("INVALID_API_KEY", _any("invalid_api_key", "incorrect api key", "invalid api key"), _invalid_key),
    ErrorRule("INSUFFICIENT_QUOTA", _any("insufficient_quota", "quota", "billing"), _quota),
    ErrorRule("RATE_LIMIT", _any("rate_limit", "rate limit", "too many requests"), _rate_limit),
    ErrorRule("MODEL_NOT_FOUND", _is_model_error, _model_not_found),
    ErrorRule("CREDENTIAL_NOT_FOUND", _any("credential not found", "credential is required"), _credential_missing),
    ErrorRule("VARIABLE_NAME_MISSING", _any("variable name is missing"), _variable_name_missing),
    ErrorRule("USER_PROMPT_MISSING", _any("user prompt is missing"), _prompt_missing),
    ErrorRule("DECRYPTION_ERROR", _any("decrypt"), _decryption),
    ErrorRule("NETWORK_ERROR", _any("network", "fetch failed", "timeout", "timed out",
                                    "connection refused"), _network),
    ErrorRule("WORKFLOW_CYCLE", _any("cycle", "cyclic"), _cycle),
]

_RULES_BY_CODE = {rule.code: rule for rule in RULES}


def _fallback(message: str) -> StructuredError:
    sanitized = re.sub(r"\s+", " ", message).strip()[:FALLBACK_MESSAGE_LIMIT]
    if sanitized:
        guidance = (f'The provider returned: "{sanitized}". Review your node configuration '
                    "and credentials, then try again.")
    else:
        guidance = ("An unexpected error occurred during workflow execution. "
                    "Please review the error details below.")
    return StructuredError(
        message=sanitized or "Execution Error",
        guidance=guidance,
        fix_steps=[
            "Check the error message for specific details",
            "Verify all node configurations are correct",
            "Ensure all required credentials are set up",
            "Try executing the workflow again",
        ],
        error_code="UNKNOWN_ERROR",
    )


def _from_http_status(exc: httpx.HTTPStatusError, provider: ProviderDetails) -> StructuredError:
    status = exc.response.status_code
    if status == 401:
        return _invalid_key(provider)
    if status == 429:
        return _rate_limit(provider)
    return StructuredError(
        message=f"HTTP {status} from {exc.request.url}",
        guidance=f"The remote server answered with status {status} ({exc.response.reason_phrase}).",
        fix_steps=[
            "Check the request URL and method",
            "Verify any authentication headers",
            "Inspect the response body for details",
        ],
        error_code="HTTP_ERROR",
        retriable=status >= 500,
    )


def classify(error: Any, provider: Optional[str] = None) -> StructuredError:
    """Normalize any failure into a StructuredError.

    Args:
        error: Exception (or any value) that was raised.
        provider: Optional LLM provider key used to word provider-specific messages.

    Returns:
        The classified StructuredError; never raises.
    """
    details = PROVIDERS.get(provider or DEFAULT_PROVIDER, PROVIDERS[DEFAULT_PROVIDER])

    if isinstance(error, NodeExecutionError):
        return error.error
    if isinstance(error, StructuredError):
        return error
    if isinstance(error, ConfigurationError):
        rule = _RULES_BY_CODE.get(error.error_code)
        if rule is not None:
            return rule.build(details)
        return StructuredError(
            message=str(error),
            guidance=error.guidance,
            fix_steps=list(error.fix_steps),
            error_code=error.error_code,
        )
    if isinstance(error, WorkflowCycleError):
        return _cycle(details)
    if isinstance(error, httpx.HTTPStatusError):
        return _from_http_status(error, details)
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return _network(details)

    message = str(error) if not isinstance(error, BaseException) else (str(error) or type(error).__name__)
    text = message.lower()
    for rule in RULES:
        if rule.matches(text):
            return rule.build(details)
    return _fallback(message)
