"""Webhook normalizers — platform payloads to a canonical pipeline event."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any

from app.errors import MalformedPayload, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalWebhookEvent:
    platform: str
    event: str
    ref: str
    commit_sha: str
    commit_message: str
    author: str
    status: str
    repo_url: str
    external_id: str | None = None


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedPayload(f"'{key}' must be an object")
    return value


def _required_str(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MalformedPayload(f"Missing or invalid '{field}'")
    return value.strip()


def _optional_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, (str, int)):
        return str(value)
    return ""


def _require_object(payload: object) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook payload must be a JSON object")
    return payload


class WebhookNormalizer:
    """Base class for one platform's payload translation."""

    platform: str = ""
    event_header: str = ""
    signature_header: str = ""

    def normalize(self, payload: object, event_type: str | None) -> CanonicalWebhookEvent | None:
        """Return the canonical event, or ``None`` when the event kind is not handled."""
        raise NotImplementedError

    def verify_signature(self, secret: str, body: bytes, signature: str | None) -> bool:
        raise NotImplementedError


class GitHubNormalizer(WebhookNormalizer):
    platform = "github"
    event_header = "X-GitHub-Event"
    signature_header = "X-Hub-Signature-256"

    def normalize(self, payload: object, event_type: str | None) -> CanonicalWebhookEvent | None:
        data = _require_object(payload)
        event = (event_type or "push").strip().lower()
        if event == "push":
            return self._push(data)
        if event == "workflow_run":
            return self._workflow_run(data)
        logger.info("Ignoring GitHub event type %s", event)
        return None

    def _push(self, data: dict[str, Any]) -> CanonicalWebhookEvent:
        head_commit = _section(data, "head_commit")
        author = _section(head_commit, "author")
        repository = _section(data, "repository")
        commit_sha = _required_str(head_commit.get("id"), "head_commit.id")
        return CanonicalWebhookEvent(
            platform=self.platform,
            event="push",
            ref=_optional_str(data.get("ref")),
            commit_sha=commit_sha,
            commit_message=_optional_str(head_commit.get("message")),
            author=_optional_str(author.get("name")),
            # Push events carry no build status of their own.
            status="success",
            repo_url=_required_str(repository.get("html_url"), "repository.html_url"),
            external_id=commit_sha,
        )

    def _workflow_run(self, data: dict[str, Any]) -> CanonicalWebhookEvent:
        run = _section(data, "workflow_run")
        head_commit = _section(run, "head_commit")
        author = _section(head_commit, "author")
        repository = _section(data, "repository")
        run_id = run.get("id")
        return CanonicalWebhookEvent(
            platform=self.platform,
            event="workflow_run",
            ref=_optional_str(run.get("head_branch")),
            commit_sha=_required_str(run.get("head_sha"), "workflow_run.head_sha"),
            commit_message=_optional_str(head_commit.get("message")),
            author=_optional_str(author.get("name")),
            status=_github_run_status(run),
            repo_url=_required_str(repository.get("html_url"), "repository.html_url"),
            external_id=f"gh-run-{run_id}" if run_id is not None else None,
        )

    def verify_signature(self, secret: str, body: bytes, signature: str | None) -> bool:
        """Validate X-Hub-Signature-256 HMAC."""
        if not secret or not signature or not signature.startswith("sha256="):
            return False
        expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)


def _github_run_status(run: dict[str, Any]) -> str:
    status = _optional_str(run.get("status")).lower()
    if status == "completed":
        conclusion = _optional_str(run.get("conclusion")).lower()
        return "canceled" if conclusion == "cancelled" else conclusion
    if status == "in_progress":
        return "running"
    if status in ("queued", "requested", "waiting"):
        return "pending"
    return status


class GitLabNormalizer(WebhookNormalizer):
    platform = "gitlab"
    event_header = "X-Gitlab-Event"
    signature_header = "X-Gitlab-Token"

    def normalize(self, payload: object, event_type: str | None) -> CanonicalWebhookEvent | None:
        data = _require_object(payload)
        kind = (event_type or _optional_str(data.get("object_kind")) or "push").strip().lower()
        if kind in ("push hook", "push"):
            return self._push(data)
        if kind in ("pipeline hook", "pipeline"):
            return self._pipeline(data)
        logger.info("Ignoring GitLab event type %s", kind)
        return None

    def _push(self, data: dict[str, Any]) -> CanonicalWebhookEvent:
        project = _section(data, "project")
        commit_sha = _required_str(data.get("checkout_sha") or data.get("after"), "checkout_sha")
        commits = data.get("commits")
        last_commit: dict[str, Any] = {}
        if isinstance(commits, list) and commits and isinstance(commits[-1], dict):
            last_commit = commits[-1]
        author = _section(last_commit, "author")
        return CanonicalWebhookEvent(
            platform=self.platform,
            event="push",
            ref=_optional_str(data.get("ref")),
            commit_sha=commit_sha,
            commit_message=_optional_str(last_commit.get("message")),
            author=_optional_str(author.get("name")) or _optional_str(data.get("user_name")),
            status="success",
            repo_url=_required_str(project.get("web_url"), "project.web_url"),
            external_id=commit_sha,
        )

    def _pipeline(self, data: dict[str, Any]) -> CanonicalWebhookEvent:
        attrs = _section(data, "object_attributes")
        commit = _section(data, "commit")
        author = _section(commit, "author")
        project = _section(data, "project")
        pipeline_id = attrs.get("id")
        return CanonicalWebhookEvent(
            platform=self.platform,
            event="pipeline",
            ref=_optional_str(attrs.get("ref")),
            commit_sha=_required_str(attrs.get("sha"), "object_attributes.sha"),
            commit_message=_optional_str(commit.get("message")),
            author=_optional_str(author.get("name")),
            status=_optional_str(attrs.get("status")).lower(),
            repo_url=_required_str(project.get("web_url"), "project.web_url"),
            external_id=f"gl-pipeline-{pipeline_id}" if pipeline_id is not None else None,
        )

    def verify_signature(self, secret: str, body: bytes, signature: str | None) -> bool:
        """GitLab sends the shared secret verbatim in X-Gitlab-Token."""
        if not secret or not signature:
            return False
        return hmac.compare_digest(secret, signature)


_NORMALIZERS: dict[str, WebhookNormalizer] = {
    GitHubNormalizer.platform: GitHubNormalizer(),
    GitLabNormalizer.platform: GitLabNormalizer(),
}


def get_normalizer(platform: str) -> WebhookNormalizer:
    normalizer = _NORMALIZERS.get(platform.lower())
    if normalizer is None:
        raise NotFound(f"Unsupported webhook platform: {platform}")
    return normalizer


def register_normalizer(normalizer: WebhookNormalizer) -> None:
    _NORMALIZERS[normalizer.platform] = normalizer
