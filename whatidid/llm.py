"""
LLM interface for whatidid using LiteLLM.

Turns merged pull requests into feature descriptions:
- LLMClient: thin completion wrapper with typed errors
- FeatureSummarizer: single and batched PR -> Feature extraction, with a
  low-confidence fallback whenever the model's answer is unusable

LiteLLM supports 100+ providers; the model string selects one
(e.g. gemini/gemini-2.5-flash, gpt-4o, claude-3-5-sonnet-20241022).
See: https://docs.litellm.ai/docs/providers
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable

from .models import Confidence, Feature, FeatureType, PullRequest

logger = logging.getLogger(__name__)

# Suppress LiteLLM's verbose logging
logging.getLogger("LiteLLM").setLevel(logging.WARNING)

MAX_BODY_CHARS = 2000
MAX_COMMITS = 20
DEFAULT_BATCH_SIZE = 5
BATCH_DELAY = 0.2


class LLMClientError(Exception):
    """Failed or empty completion."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMAuthError(LLMClientError):
    """Provider rejected the API key."""


class LLMClient:
    """LiteLLM-based text completion client."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 1024,
        num_retries: int = 2,
    ):
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.num_retries = num_retries
        self._litellm = None

    def _get_litellm(self):
        """Lazy import LiteLLM."""
        if self._litellm is None:
            import litellm
            self._litellm = litellm
        return self._litellm

    def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """
        Complete a prompt and return the response text.

        Raises:
            LLMAuthError: the provider returned 401
            LLMClientError: any other failure, or an empty completion
        """
        litellm = self._get_litellm()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = litellm.completion(
                model=self.model,
                messages=messages,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
                api_key=self.api_key,
                num_retries=self.num_retries,
            )
        except Exception as e:
            status = getattr(e, "status_code", None)
            if status == 401:
                raise LLMAuthError(f"LLM authentication failed: {e}", 401) from e
            raise LLMClientError(f"LLM API error: {e}", status) from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise LLMClientError("LLM returned empty response")
        return content


SYSTEM_PROMPT = """\
You are an expert at analyzing pull requests and extracting the shipped features or changes.

Analyze the provided pull request and return a JSON object describing the feature or change that was delivered.

Respond ONLY with a valid JSON object in this exact format:
{
    "title": "A concise title for the feature (max 10 words)",
    "description": "A 1-2 sentence description of what was delivered and its impact",
    "type": "feature" | "enhancement" | "bugfix" | "infra" | "refactor",
    "confidence": "high" | "medium" | "low"
}

Type guidelines:
- "feature": a new user-facing capability
- "enhancement": an improvement to an existing feature
- "bugfix": a fix for a bug or issue
- "infra": infrastructure, tooling, CI/CD or developer experience
- "refactor": code restructuring without functional changes

Confidence guidelines:
- "high": the PR clearly delivers a specific, articulable change
- "medium": the PR delivers something but the exact impact is unclear
- "low": the PR is hard to summarize or purely internal

Do NOT include any text outside the JSON object. Do NOT use markdown code blocks.
"""

BATCH_SYSTEM_PROMPT = """\
You are an expert at analyzing pull requests and extracting the shipped features or changes.

You will receive several pull requests, each between "=== ITEM <id> ===" and "=== END ITEM <id> ===".

Respond ONLY with a JSON array containing one object per item, in the same order as the input:
[
    {
        "id": "<the item id, copied exactly>",
        "title": "A concise title for the feature (max 10 words)",
        "description": "A 1-2 sentence description of what was delivered and its impact",
        "type": "feature" | "enhancement" | "bugfix" | "infra" | "refactor",
        "confidence": "high" | "medium" | "low"
    }
]

Every object MUST carry the "id" of the item it describes.
Use the same type and confidence guidelines as for a single pull request:
feature = new capability, enhancement = improvement, bugfix = fix,
infra = tooling/CI, refactor = restructuring without functional change.
Do NOT include any text outside the JSON array. Do NOT use markdown code blocks.
"""


def pr_identifier(pr: PullRequest) -> str:
    return f"{pr.repo_full_name}#{pr.number}"


def build_pr_context(pr: PullRequest) -> str:
    """Prompt text describing one PR."""
    parts = [
        f"## Pull Request #{pr.number}",
        f"Repository: {pr.repo_full_name}",
        f"Title: {pr.title}",
        f"Base Branch: {pr.base_branch}",
        f"Merged: {pr.merged_at}",
    ]

    if pr.body and pr.body.strip():
        parts.append(f"\n### Description\n{pr.body[:MAX_BODY_CHARS]}")

    if pr.commits:
        parts.append("\n### Commit Messages")
        for commit in pr.commits[:MAX_COMMITS]:
            first_line = commit.message.split("\n")[0]
            parts.append(f"- {first_line}")
        if len(pr.commits) > MAX_COMMITS:
            parts.append(f"... and {len(pr.commits) - MAX_COMMITS} more commits")

    return "\n".join(parts)


def build_batch_prompt(prs: list[PullRequest]) -> str:
    blocks = []
    for pr in prs:
        ident = pr_identifier(pr)
        blocks.append(f"=== ITEM {ident} ===\n{build_pr_context(pr)}\n=== END ITEM {ident} ===")
    return (
        f"Summarize each of the following {len(prs)} pull requests. "
        "Keep the input order and copy each item's id into its output object.\n\n"
        + "\n\n".join(blocks)
    )


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if match:
        return match.group(1)
    return text


def fallback_feature(pr: PullRequest) -> Feature:
    """Low-confidence feature built from the raw PR title."""
    return Feature.from_pull_request(
        pr,
        title=pr.title,
        description=f"Merged PR #{pr.number}: {pr.title}",
        type=FeatureType.FEATURE,
        confidence=Confidence.LOW,
    )


def feature_from_payload(data: dict[str, Any], pr: PullRequest) -> Feature:
    """Validate one model-produced object into a Feature."""
    try:
        feature_type = FeatureType(data.get("type"))
    except ValueError:
        feature_type = FeatureType.FEATURE
    try:
        confidence = Confidence(data.get("confidence"))
    except ValueError:
        confidence = Confidence.MEDIUM

    return Feature.from_pull_request(
        pr,
        title=data.get("title") or pr.title,
        description=data.get("description") or f"Merged PR #{pr.number}: {pr.title}",
        type=feature_type,
        confidence=confidence,
    )


def parse_feature_response(response: str, pr: PullRequest) -> Feature:
    """Parse a single-PR answer, falling back to the raw PR title."""
    try:
        data = json.loads(_strip_code_fence(response))
    except json.JSONDecodeError:
        data = None

    if not isinstance(data, dict):
        logger.warning(f"Failed to parse LLM response for PR #{pr.number}, using fallback")
        return fallback_feature(pr)
    return feature_from_payload(data, pr)


def parse_batch_response(response: str) -> dict[str, dict[str, Any]]:
    """Map item id -> object from a batch answer. Raises ValueError if unusable."""
    data = json.loads(_strip_code_fence(response))
    if not isinstance(data, list):
        raise ValueError("Batch response is not a JSON array")
    return {
        str(item["id"]): item
        for item in data
        if isinstance(item, dict) and item.get("id") is not None
    }


class FeatureSummarizer:
    """
    LLM-based PR -> Feature extraction.

    Never raises for a bad or failed completion (the PR degrades to a
    low-confidence feature); only LLMAuthError propagates.
    """

    def __init__(self, client: LLMClient, temperature: float = 0.3, max_tokens: int = 512):
        self.client = client
        self.temperature = temperature
        self.max_tokens = max_tokens

    def summarize(self, pr: PullRequest) -> Feature:
        try:
            response = self.client.complete(
                build_pr_context(pr),
                system_prompt=SYSTEM_PROMPT,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except LLMAuthError:
            raise
        except LLMClientError as e:
            logger.warning(f"LLM error for PR #{pr.number}: {e}")
            return fallback_feature(pr)

        return parse_feature_response(response, pr)

    def summarize_batch(self, prs: list[PullRequest]) -> list[Feature]:
        """
        Summarize several PRs in one completion.

        Results are matched back by id, so dropped or reordered items are
        tolerated; any PR missing from the answer is summarized on its own.
        """
        if len(prs) <= 1:
            return [self.summarize(pr) for pr in prs]

        try:
            response = self.client.complete(
                build_batch_prompt(prs),
                system_prompt=BATCH_SYSTEM_PROMPT,
                temperature=self.temperature,
                max_tokens=self.max_tokens * len(prs),
            )
            by_id = parse_batch_response(response)
        except LLMAuthError:
            raise
        except (LLMClientError, ValueError) as e:
            logger.warning(f"Batch summarization failed ({e}); summarizing {len(prs)} PRs individually")
            return [self.summarize(pr) for pr in prs]

        features = []
        for pr in prs:
            item = by_id.get(pr_identifier(pr))
            if item is None:
                logger.debug(f"{pr_identifier(pr)} missing from batch response")
                features.append(self.summarize(pr))
            else:
                features.append(feature_from_payload(item, pr))
        return features


def summarize_prs(
    prs: list[PullRequest],
    summarizer: FeatureSummarizer,
    batch_size: int = DEFAULT_BATCH_SIZE,
    on_progress: Callable[[int, int], None] | None = None,
    delay: float = BATCH_DELAY,
) -> list[Feature]:
    """Summarize PRs in batches, preserving input order."""
    features: list[Feature] = []
    total = len(prs)
    batch_size = max(1, batch_size)

    for start in range(0, total, batch_size):
        batch = prs[start:start + batch_size]
        features.extend(summarizer.summarize_batch(batch))
        if on_progress:
            on_progress(len(features), total)
        if delay and start + batch_size < total:
            time.sleep(delay)

    return features
