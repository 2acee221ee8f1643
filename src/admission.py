"""
Admission - Gate for author writes before they reach storage.

Each write runs through the kind's Validator, then the kind's mutating
webhooks, then the Validator again on the mutated spec, then the
validating webhooks. The reconciler calls the same Validator, so the loop
never accepts a spec admission would reject.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from models import ResourceKind
from validation import Validator

logger = logging.getLogger(__name__)

OPERATIONS = ("CREATE", "UPDATE", "DELETE")
WEBHOOK_TYPES = ("mutating", "validating")
FAILURE_POLICIES = ("Fail", "Ignore")


class AdmissionError(Exception):
    """Raised when a write is denied."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SpecRejected(AdmissionError):
    """Raised when the Validator rejects the spec."""


@dataclass
class WebhookConfig:
    """An admission webhook attached to a resource kind."""

    name: str
    url: str
    webhook_type: str
    operations: List[str] = field(default_factory=lambda: ["CREATE", "UPDATE"])
    timeout_seconds: float = 10
    failure_policy: str = "Fail"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookConfig":
        for required in ("name", "url", "webhook_type"):
            if not data.get(required):
                raise ValueError(f"Webhook requires '{required}'")

        webhook = cls(
            name=data["name"],
            url=data["url"],
            webhook_type=data["webhook_type"],
            operations=list(data.get("operations") or ["CREATE", "UPDATE"]),
            timeout_seconds=data.get("timeout_seconds", 10),
            failure_policy=data.get("failure_policy", "Fail"),
        )
        if webhook.webhook_type not in WEBHOOK_TYPES:
            raise ValueError(f"Unknown webhook type: {webhook.webhook_type}")
        if webhook.failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"Unknown failure policy: {webhook.failure_policy}")
        unknown = [op for op in webhook.operations if op not in OPERATIONS]
        if unknown:
            raise ValueError(f"Unknown operations: {', '.join(unknown)}")
        return webhook

    def matches(self, operation: str) -> bool:
        return operation in self.operations


@dataclass
class AdmissionRequest:
    """A proposed write, as sent to webhooks."""

    operation: str
    kind: str
    namespace: str
    name: str
    spec: Dict[str, Any]
    old_spec: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "spec": self.spec,
            "old_spec": self.old_spec,
        }


@dataclass
class AdmissionResponse:
    """Response from an admission webhook."""

    allowed: bool
    message: str = ""
    patches: List[Dict[str, Any]] = field(default_factory=list)


def _split_pointer(path: str) -> List[str]:
    """Split a JSON pointer into unescaped tokens, dropping a /spec prefix."""
    if path.startswith("/spec/"):
        path = path[len("/spec") :]
    if not path.startswith("/") or path == "/":
        raise AdmissionError(f"Invalid patch path: {path}")
    return [t.replace("~1", "/").replace("~0", "~") for t in path[1:].split("/")]


def apply_patches(
    spec: Dict[str, Any], patches: List[Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Apply JSON Patch add/replace/remove operations to a copy of a spec.

    Paths address fields inside the spec, with or without a leading
    /spec. Only object members are addressable.

    Raises:
        AdmissionError: On an invalid path or unsupported operation
    """
    result = copy.deepcopy(spec)

    for patch in patches:
        op = patch.get("op")
        path = patch.get("path", "")
        tokens = _split_pointer(path)

        parent = result
        for token in tokens[:-1]:
            if not isinstance(parent, dict) or token not in parent:
                raise AdmissionError(f"Patch path not found: {path}")
            parent = parent[token]
        if not isinstance(parent, dict):
            raise AdmissionError(f"Patch path not found: {path}")

        last = tokens[-1]
        if op == "add":
            parent[last] = copy.deepcopy(patch.get("value"))
        elif op == "replace":
            if last not in parent:
                raise AdmissionError(f"Patch path not found: {path}")
            parent[last] = copy.deepcopy(patch.get("value"))
        elif op == "remove":
            if last not in parent:
                raise AdmissionError(f"Patch path not found: {path}")
            del parent[last]
        else:
            raise AdmissionError(f"Unsupported patch operation: {op}")

    return result


class AdmissionChain:
    """
    Admission for one resource kind.

    Args:
        kind: Kind whose webhooks run
        validator: The kind's Validator, shared with its Reconciler
    """

    def __init__(self, kind: ResourceKind, validator: Validator):
        self.kind = kind
        self.validator = validator
        self.webhooks = [WebhookConfig.from_dict(w) for w in kind.webhooks]

    async def run(self, request: AdmissionRequest) -> Dict[str, Any]:
        """
        Admit a write.

        Returns:
            The spec to persist, after mutation

        Raises:
            SpecRejected: If the Validator rejects the spec
            AdmissionError: If a webhook denies the write or fails under
                the Fail policy
        """
        if request.operation == "DELETE":
            self._validate(request.old_spec or {}, request.old_spec, deleting=True)
            await self._run_validating(request)
            return request.spec

        self._validate(request.spec, request.old_spec)

        mutated = False
        for webhook in self._matching("mutating", request.operation):
            response = await self._call_webhook(webhook, request)
            if not response.allowed:
                raise AdmissionError(
                    response.message or f"Denied by mutating webhook {webhook.name}"
                )
            if response.patches:
                request.spec = apply_patches(request.spec, response.patches)
                mutated = True

        if mutated:
            self._validate(request.spec, request.old_spec)

        await self._run_validating(request)
        return request.spec

    def _validate(
        self,
        spec: Dict[str, Any],
        old_spec: Optional[Dict[str, Any]],
        deleting: bool = False,
    ) -> None:
        result = self.validator.validate(spec, old_spec, deleting=deleting)
        if not result.is_valid:
            raise SpecRejected(result.error_message or "Validation failed")

    async def _run_validating(self, request: AdmissionRequest) -> None:
        for webhook in self._matching("validating", request.operation):
            response = await self._call_webhook(webhook, request)
            if not response.allowed:
                raise AdmissionError(
                    response.message or f"Denied by validating webhook {webhook.name}"
                )

    def _matching(self, webhook_type: str, operation: str) -> List[WebhookConfig]:
        return [
            w
            for w in self.webhooks
            if w.webhook_type == webhook_type and w.matches(operation)
        ]

    async def _call_webhook(
        self, webhook: WebhookConfig, request: AdmissionRequest
    ) -> AdmissionResponse:
        """
        POST the request to one webhook.

        Raises:
            AdmissionError: If the call fails and the policy is Fail
        """
        timeout = aiohttp.ClientTimeout(total=webhook.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(webhook.url, json=request.to_dict()) as resp:
                    if resp.status >= 400:
                        raise aiohttp.ClientError(
                            f"Webhook returned HTTP {resp.status}"
                        )
                    body = await resp.json()
        except Exception as e:
            logger.warning(f"Admission webhook {webhook.name} failed: {e}")
            if webhook.failure_policy == "Ignore":
                return AdmissionResponse(allowed=True, message="Webhook error ignored")
            raise AdmissionError(f"Admission webhook {webhook.name} failed: {e}")

        return AdmissionResponse(
            allowed=bool(body.get("allowed", False)),
            message=body.get("message", ""),
            patches=body.get("patches") or [],
        )
