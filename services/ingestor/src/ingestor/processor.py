from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import Levenshtein
from common.utils import normalize_whitespace, unique_preserving_order

from ingestor.models import CANDIDATE_NAME_LIMIT, CandidateRecord, WebhookItem, WebhookSource

BRANCH_REF_PREFIX = "refs/heads/"
DEFAULT_BRANCH = "main"
ELLIPSIS = "..."


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _lowered(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [value.strip().lower() for value in values if _non_empty_str(value)]


def truncate_title(title: str, limit: int = CANDIDATE_NAME_LIMIT) -> str:
    squashed = normalize_whitespace(title)
    if len(squashed) <= limit:
        return squashed

    budget = limit - len(ELLIPSIS)
    cut = squashed[:budget]
    boundary = cut.rfind(" ")
    # Only back up to a word boundary when most of the budget survives.
    if boundary >= budget // 2:
        cut = cut[:boundary]
    return cut.rstrip() + ELLIPSIS


def parse_branch(ref: Any) -> str | None:
    if not _non_empty_str(ref):
        return None
    if ref.startswith(BRANCH_REF_PREFIX):
        return ref[len(BRANCH_REF_PREFIX) :] or None
    return None


def validate_push_event(event: Any) -> bool:
    if not isinstance(event, Mapping):
        return False
    repository = event.get("repository")
    if not isinstance(repository, Mapping):
        return False
    if not _non_empty_str(repository.get("name")):
        return False
    return _non_empty_str(repository.get("html_url")) or _non_empty_str(repository.get("url"))


def process_push_event(event: Any) -> CandidateRecord | None:
    if not validate_push_event(event):
        return None

    repository = event["repository"]
    name = repository["name"].strip()
    url = repository.get("html_url") if _non_empty_str(repository.get("html_url")) else repository["url"]
    description = repository.get("description")
    if not _non_empty_str(description):
        description = f"Repository: {name}"

    tags = ["github"]
    if _non_empty_str(repository.get("language")):
        tags.append(repository["language"].strip().lower())

    branch = parse_branch(event.get("ref"))
    default_branch = repository.get("default_branch") or DEFAULT_BRANCH
    if branch and branch != default_branch:
        tags.append(branch)
    tags.extend(_lowered(repository.get("topics")))

    pusher = event.get("pusher")
    return CandidateRecord(
        name=truncate_title(name),
        source_type=WebhookSource.GITHUB.value,
        url=url,
        tags=unique_preserving_order(tags),
        description=description,
        metadata={
            "branch": branch or default_branch,
            "pusher": pusher.get("name") if isinstance(pusher, Mapping) else None,
            "stars": repository.get("stargazers_count"),
            "fullName": repository.get("full_name"),
        },
    )


def validate_article(article: Any) -> bool:
    if not isinstance(article, Mapping):
        return False
    return _non_empty_str(article.get("title")) and _non_empty_str(article.get("link"))


def process_article(article: Any) -> CandidateRecord | None:
    if not validate_article(article):
        return None

    title = normalize_whitespace(article["title"])
    tags = ["medium", "article", *_lowered(article.get("categories"))]
    description = article.get("description")
    return CandidateRecord(
        name=truncate_title(title),
        source_type=WebhookSource.MEDIUM.value,
        url=article["link"].strip(),
        tags=unique_preserving_order(tags),
        description=description if _non_empty_str(description) else "",
        metadata={
            "fullTitle": title,
            "author": article.get("author"),
            "publishedAt": article.get("pubDate"),
        },
    )


def process_generic_item(
    item: WebhookItem,
    source: WebhookSource | str = WebhookSource.CUSTOM,
) -> CandidateRecord:
    metadata: dict[str, Any] = {
        **item.metadata,
        "kind": item.kind.value,
        "externalId": item.external_id,
    }
    if item.content:
        metadata["content"] = item.content
    if len(normalize_whitespace(item.title)) > CANDIDATE_NAME_LIMIT:
        metadata["fullTitle"] = item.title

    return CandidateRecord(
        name=truncate_title(item.title),
        source_type=WebhookSource(source).value,
        url=item.url,
        tags=unique_preserving_order([tag.strip() for tag in item.tags]),
        description=item.description,
        metadata=metadata,
    )


def similarity(a: str, b: str) -> int:
    """Score two titles from 0 to 100.

    Identical titles score 100 and containment of one title in the other
    scores 90; anything else is scored by normalized edit distance.
    """
    first = a.strip().lower()
    second = b.strip().lower()
    if first == second:
        return 100
    if not first or not second:
        return 0
    if first in second or second in first:
        return 90

    longer, shorter = (first, second) if len(first) >= len(second) else (second, first)
    distance = Levenshtein.distance(longer, shorter)
    return round((len(longer) - distance) / len(longer) * 100)


def best_match(title: str, candidates: Iterable[str]) -> tuple[str, int] | None:
    best: tuple[str, int] | None = None
    for candidate in candidates:
        score = similarity(title, candidate)
        if best is None or score > best[1]:
            best = (candidate, score)
    return best
