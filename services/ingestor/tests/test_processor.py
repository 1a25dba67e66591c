from __future__ import annotations

import pytest
from ingestor.models import ItemKind, WebhookItem, WebhookSource
from ingestor.processor import (
    best_match,
    parse_branch,
    process_article,
    process_generic_item,
    process_push_event,
    similarity,
    truncate_title,
    validate_article,
    validate_push_event,
)

pytestmark = pytest.mark.unit


def test_push_event_becomes_github_candidate() -> None:
    candidate = process_push_event(
        {
            "repository": {
                "name": "test-repo",
                "full_name": "user/test-repo",
                "html_url": "https://github.com/user/test-repo",
                "description": "Test repository",
                "stargazers_count": 42,
                "language": "TypeScript",
                "topics": ["Webhooks", "typescript"],
            },
            "pusher": {"name": "octocat"},
            "ref": "refs/heads/main",
        }
    )

    assert candidate is not None
    assert candidate.name == "test-repo"
    assert candidate.source_type == "github"
    assert candidate.url == "https://github.com/user/test-repo"
    assert candidate.description == "Test repository"
    assert candidate.tags == ["github", "typescript", "webhooks"]
    assert candidate.metadata["branch"] == "main"
    assert candidate.metadata["pusher"] == "octocat"
    assert candidate.metadata["stars"] == 42


def test_push_event_tags_nested_branch_name() -> None:
    candidate = process_push_event(
        {
            "repository": {
                "name": "repo",
                "full_name": "user/repo",
                "html_url": "https://github.com/user/repo",
                "stargazers_count": 0,
            },
            "ref": "refs/heads/feature/x",
        }
    )

    assert candidate is not None
    assert "github" in candidate.tags
    assert "feature/x" in candidate.tags
    assert candidate.description == "Repository: repo"


def test_push_event_skips_tag_for_declared_default_branch() -> None:
    candidate = process_push_event(
        {
            "repository": {
                "name": "repo",
                "url": "https://github.com/user/repo",
                "default_branch": "trunk",
            },
            "ref": "refs/heads/trunk",
        }
    )

    assert candidate is not None
    assert candidate.tags == ["github"]
    assert candidate.url == "https://github.com/user/repo"


@pytest.mark.parametrize(
    "event",
    [
        None,
        "not-an-object",
        {},
        {"repository": None},
        {"repository": {"name": "", "html_url": "https://github.com/user/repo"}},
        {"repository": {"name": "repo"}},
        {"repository": {"name": "repo", "html_url": "   "}},
    ],
)
def test_invalid_push_events_are_not_processable(event: object) -> None:
    assert validate_push_event(event) is False
    assert process_push_event(event) is None


def test_parse_branch_only_reads_head_refs() -> None:
    assert parse_branch("refs/heads/release/2024.1") == "release/2024.1"
    assert parse_branch("refs/tags/v1.0.0") is None
    assert parse_branch(None) is None


def test_article_becomes_medium_candidate() -> None:
    candidate = process_article(
        {
            "title": "Understanding Webhooks",
            "description": "A comprehensive guide to webhooks",
            "link": "https://medium.com/article-id",
            "author": "Jordan Doe",
            "categories": ["Technology", "Web Development", "technology"],
            "pubDate": "2024-05-01T10:00:00Z",
        }
    )

    assert candidate is not None
    assert candidate.name == "Understanding Webhooks"
    assert candidate.source_type == "medium"
    assert candidate.url == "https://medium.com/article-id"
    assert candidate.tags == ["medium", "article", "technology", "web development"]
    assert candidate.metadata["author"] == "Jordan Doe"
    assert candidate.metadata["publishedAt"] == "2024-05-01T10:00:00Z"


def test_long_article_title_is_truncated() -> None:
    candidate = process_article({"title": "A" * 100, "link": "https://medium.com/a"})

    assert candidate is not None
    assert len(candidate.name) <= 50
    assert candidate.name.endswith("...")
    assert candidate.metadata["fullTitle"] == "A" * 100


def test_truncate_title_prefers_word_boundaries() -> None:
    title = "Designing reliable webhook ingestion pipelines with retries and dead letters"

    truncated = truncate_title(title)

    assert len(truncated) <= 50
    assert truncated == "Designing reliable webhook ingestion pipelines..."


def test_truncate_title_leaves_short_titles_alone() -> None:
    assert truncate_title("  Short   title ") == "Short title"


def test_validate_article_requires_title_and_link() -> None:
    assert validate_article({"title": "Article Title", "link": "https://medium.com/article"})
    assert not validate_article({"title": "", "link": "url"})
    assert not validate_article({"title": "Title"})
    assert not validate_article(["title", "link"])
    assert process_article({"title": "", "link": "url"}) is None


def test_generic_item_passes_through_tags_and_kind() -> None:
    item = WebhookItem(
        external_id="item-1",
        kind=ItemKind.BLOG,
        title="Automation notes",
        description="Notes from the automation pipeline",
        content="# Notes",
        tags=["automation", "automation", "notes"],
        url="https://example.com/notes",
        metadata={"origin": "zapier"},
    )

    candidate = process_generic_item(item)

    assert candidate.name == "Automation notes"
    assert candidate.source_type == "custom"
    assert candidate.url == "https://example.com/notes"
    assert candidate.tags == ["automation", "notes"]
    assert candidate.metadata == {
        "origin": "zapier",
        "kind": "blog",
        "externalId": "item-1",
        "content": "# Notes",
    }


def test_generic_item_uses_envelope_source() -> None:
    item = WebhookItem(external_id="x", title="Some project")

    assert process_generic_item(item, WebhookSource.GITHUB).source_type == "github"


def test_candidate_project_input_shape() -> None:
    item = WebhookItem(external_id="x", title="Some project", tags=["a"])

    project_input = process_generic_item(item).to_project_input()

    assert project_input["name"] == "Some project"
    assert project_input["url"] == ""
    assert project_input["source"] == "custom"
    assert project_input["tags"] == ["a"]


def test_identical_titles_score_100() -> None:
    assert similarity("test project", "test project") == 100
    assert similarity("Test Project", "test project ") == 100


def test_substring_titles_score_at_least_90() -> None:
    assert similarity("test project repo", "test project") >= 90


def test_unrelated_titles_score_low() -> None:
    assert similarity("completely different", "totally unrelated") < 50


def test_near_duplicate_titles_score_by_edit_distance() -> None:
    assert similarity("portfolio-site", "portfolio_site") == 93
    assert similarity("", "anything") == 0


def test_edit_distance_score_is_relative_to_longer_title() -> None:
    # kitten -> sitting takes three edits over seven characters.
    assert similarity("Kitten", "sitting") == 57
    assert similarity("webhook ingestor", "webhook ingester") == 94


def test_best_match_picks_highest_score() -> None:
    match = best_match("webhook ingestor", ["chat assistant", "webhook ingester", "resume parser"])

    assert match is not None
    assert match[0] == "webhook ingester"
    assert match[1] >= 90
    assert best_match("anything", []) is None
