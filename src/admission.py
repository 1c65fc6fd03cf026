#!/usr/bin/env python3
# src/admission.py
"""
Admission decisions for pod deletions and updates.

Each AdmissionReview is decided from the operator override and the node
monitor's current view. Denials are counted and recorded as a Warning event
on the pod; the event is best effort and never changes the decision.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from kubernetes import client
from kubernetes.client.rest import ApiException
from prometheus_client import Counter

logger = logging.getLogger("pod-eviction-protection.admission")

eviction_intercepted_total = Counter(
    "eviction_intercepted_total", "Total number of eviction requests intercepted"
)
eviction_allowed_total = Counter(
    "eviction_allowed_total", "Total number of eviction requests allowed"
)

EVALUATED_OPERATIONS = ("DELETE", "UPDATE")

DENY_REASON = "EvictionProtection"
DENY_MESSAGE = "Pod eviction intercepted due to multiple nodes being NotReady"
EVENT_COMPONENT = "pod-eviction-protection"
EVENT_MESSAGE = (
    "Pod eviction intercepted due to node being NotReady. "
    "Waiting for administrator confirmation."
)


class AdmissionDecodeError(ValueError):
    """Raised when an AdmissionReview or its pod payload cannot be decoded."""


@dataclass(frozen=True)
class PodIdentity:
    name: str
    namespace: str
    node_name: str = ""
    uid: str = ""


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: str = ""
    message: str = ""


ALLOW = AdmissionDecision(allowed=True)


def decode_review(body: Union[bytes, str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Parse a raw AdmissionReview body and check it carries a request."""
    if isinstance(body, (bytes, str)):
        try:
            review = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise AdmissionDecodeError(f"invalid admission review: {e}") from e
    else:
        review = dict(body)

    if not isinstance(review, dict):
        raise AdmissionDecodeError("admission review must be a JSON object")
    request = review.get("request")
    if not isinstance(request, dict):
        raise AdmissionDecodeError("admission review has no request")
    if not request.get("uid"):
        raise AdmissionDecodeError("admission request has no uid")
    return review


def decode_pod(request: Mapping[str, Any]) -> PodIdentity:
    """Extract the pod under review: oldObject for DELETE, object for UPDATE."""
    operation = request.get("operation")
    field_name = "oldObject" if operation == "DELETE" else "object"
    pod = request.get(field_name)
    if not isinstance(pod, dict):
        raise AdmissionDecodeError(f"admission request {operation} has no pod in {field_name}")

    metadata = pod.get("metadata") or {}
    spec = pod.get("spec") or {}
    if not isinstance(metadata, dict) or not isinstance(spec, dict):
        raise AdmissionDecodeError("pod metadata and spec must be objects")

    return PodIdentity(
        name=_string_field(metadata, "name") or _string_field(request, "name"),
        namespace=_string_field(metadata, "namespace") or _string_field(request, "namespace"),
        node_name=_string_field(spec, "nodeName"),
        uid=_string_field(metadata, "uid"),
    )


def _string_field(obj: Mapping[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise AdmissionDecodeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _is_pod_request(request: Mapping[str, Any]) -> bool:
    kind = request.get("kind") or {}
    if not isinstance(kind, dict):
        raise AdmissionDecodeError("admission request kind must be an object")
    return not kind or kind.get("kind") == "Pod"


class AdmissionDecisionHandler:
    """Decides AdmissionReviews for pods."""

    def __init__(self, tracker, override, core_api: Optional[client.CoreV1Api] = None,
                 audit_timeout: float = 5.0):
        self.tracker = tracker
        self.override = override
        self.api = core_api
        self.audit_timeout = audit_timeout

    def review(self, body: Union[bytes, str, Mapping[str, Any]]) -> Dict[str, Any]:
        """Decide one AdmissionReview and return it with its response set.

        Raises AdmissionDecodeError for a malformed review.
        """
        review = decode_review(body)
        request = review["request"]
        operation = request.get("operation")

        if operation not in EVALUATED_OPERATIONS or not _is_pod_request(request):
            logger.debug(f"Allowing {operation} on {request.get('kind')} without evaluation")
            return self._respond(review, ALLOW)

        pod = decode_pod(request)
        decision = self.decide(pod)

        if decision.allowed:
            eviction_allowed_total.inc()
        else:
            eviction_intercepted_total.inc()
            self.record_audit_event(pod)

        return self._respond(review, decision)

    def decide(self, pod: PodIdentity) -> AdmissionDecision:
        if not self.override.is_intercepting():
            logger.info(
                f"Interception is disabled via callback, allowing eviction for pod {pod.namespace}/{pod.name}"
            )
            return ALLOW

        if not pod.node_name:
            logger.info(f"Pod {pod.namespace}/{pod.name} has no node assigned, allowing eviction")
            return ALLOW

        assessment = self.tracker.assess(pod.node_name)
        if assessment is None:
            logger.info(
                f"Node {pod.node_name} is Ready, allowing eviction for pod {pod.namespace}/{pod.name}"
            )
            return ALLOW

        count, threshold = assessment
        should_intercept = count >= threshold
        logger.info(
            f"Should intercept eviction for pod {pod.namespace}/{pod.name} on {pod.node_name}: "
            f"{should_intercept} (NotReady in window: {count}, threshold: {threshold})"
        )
        if should_intercept:
            return AdmissionDecision(allowed=False, reason=DENY_REASON, message=DENY_MESSAGE)
        return ALLOW

    def record_audit_event(self, pod: PodIdentity) -> bool:
        """Create a Warning event on the pod. Failures are logged, not raised."""
        if self.api is None:
            logger.debug(f"No Kubernetes client, skipping event for pod {pod.namespace}/{pod.name}")
            return False

        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{EVENT_COMPONENT}-", namespace=pod.namespace
            ),
            involved_object=client.V1ObjectReference(
                kind="Pod", name=pod.name, namespace=pod.namespace, uid=pod.uid or None
            ),
            reason=DENY_REASON,
            message=EVENT_MESSAGE,
            source=client.V1EventSource(component=EVENT_COMPONENT),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            type="Warning",
        )
        try:
            self.api.create_namespaced_event(
                pod.namespace, event, _request_timeout=self.audit_timeout
            )
            logger.info(f"Created event for pod {pod.namespace}/{pod.name}")
            return True
        except ApiException as e:
            logger.error(f"Failed to create event for pod {pod.namespace}/{pod.name}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error creating event for pod {pod.namespace}/{pod.name}: {e}")
        return False

    def _respond(self, review: Dict[str, Any], decision: AdmissionDecision) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "uid": review["request"]["uid"],
            "allowed": decision.allowed,
        }
        if not decision.allowed:
            response["status"] = {
                "status": "Failure",
                "message": decision.message,
                "reason": decision.reason,
                "code": 403,
            }

        result = dict(review)
        result.setdefault("apiVersion", "admission.k8s.io/v1")
        result.setdefault("kind", "AdmissionReview")
        result["response"] = response
        return result
