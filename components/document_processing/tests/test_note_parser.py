"""Tests for Markdown note parsing."""

import pytest
from components.document_processing import (
    NoteParser,
    normalize_reference,
    normalize_tag,
)


@pytest.fixture
def parser():
    return NoteParser()


def test_plain_content_strips_markup(parser):
    parsed = parser.parse("# Title\n\nSome **bold** and *italic* text.\n")
    assert "**" not in parsed.content
    assert "Title" in parsed.content
    assert "Some bold and italic text." in parsed.content


def test_frontmatter_tags_list_and_string(parser):
    listed = parser.parse("---\ntags: [work, Ideas]\n---\nBody text")
    assert listed.tags == ["work", "Ideas"]
    assert listed.frontmatter["tags"] == ["work", "Ideas"]
    assert "tags:" not in listed.content

    spaced = parser.parse("---\ntag: alpha, beta\n---\nBody text")
    assert spaced.tags == ["alpha", "beta"]


def test_unparseable_frontmatter_is_ignored(parser):
    parsed = parser.parse("---\n: [unclosed\n---\nBody text #real")
    assert parsed.frontmatter == {}
    assert parsed.tags == ["real"]


def test_inline_tags_from_prose_only(parser):
    raw = (
        "Planning notes #project/alpha and #Ideas.\n\n"
        "```\n#not-a-tag in code\n```\n\n"
        "Inline `#nope` span and a heading anchor url http://x.org/#frag"
    )
    parsed = parser.parse(raw)
    assert parsed.tags == ["project/alpha", "Ideas"]


def test_numeric_hash_is_not_a_tag(parser):
    parsed = parser.parse("Issue #123 is fixed, #v2 is next")
    assert parsed.tags == ["v2"]


def test_tags_deduplicated_case_insensitively(parser):
    parsed = parser.parse("---\ntags: [Work]\n---\nMore #work and #WORK here")
    assert parsed.tags == ["Work"]


def test_wikilinks_become_references_and_display_text(parser):
    parsed = parser.parse(
        "See [[Travel Plans]] and [[Projects/Car|my car]] and [[Insurance#Contacts]]."
    )
    assert parsed.references == ["Travel Plans", "Projects/Car", "Insurance"]
    assert "See Travel Plans and my car and Insurance." in parsed.content
    assert "[[" not in parsed.content


def test_markdown_links_to_notes_only(parser):
    parsed = parser.parse(
        "Read [the plan](plans/Q3%20Plan.md), [site](https://example.com) "
        "and ![pic](images/photo.png)."
    )
    assert parsed.references == ["plans/Q3 Plan.md"]
    assert "the plan" in parsed.content


def test_links_in_code_are_ignored(parser):
    parsed = parser.parse("Text\n\n```\n[[Not A Link]]\n```\n")
    assert parsed.references == []
    assert "[[Not A Link]]" in parsed.content


def test_embeds_are_references(parser):
    parsed = parser.parse("![[Diagram Note]]")
    assert parsed.references == ["Diagram Note"]


@pytest.mark.parametrize(
    "target, expected",
    [
        ("Note", "Note"),
        ("Note|Alias", "Note"),
        ("Note#Heading", "Note"),
        ("/Folder/Note.md", "Folder/Note.md"),
        ("./Note.md", "Note.md"),
        ("My%20Note", "My Note"),
        ("https://example.com/page", ""),
        ("mailto:someone@example.com", ""),
        ("#only-anchor", ""),
    ],
)
def test_normalize_reference(target, expected):
    assert normalize_reference(target) == expected


def test_normalize_tag():
    assert normalize_tag(" #work ") == "work"
    assert normalize_tag("ideas") == "ideas"
