"""Tests for inbound message merging and reference extraction."""

from __future__ import annotations

from tongyi_bridge.requests.messages import (
    extract_ref_file_urls,
    merge_messages,
    messages_prepare,
    parse_conversation_ref,
)

SESSION = "0123456789abcdef0123456789abcdef"


class TestMergeMessages:
    def test_single_message_passes_through(self):
        assert merge_messages([{"role": "user", "content": "你好"}]) == "你好\n"

    def test_history_is_framed_as_chatml(self):
        merged = merge_messages(
            [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "hi"},
            ]
        )
        assert merged == "<|im_start|>system\nbe brief<|im_end|>\n<|im_start|>user\nhi<|im_end|>\n"

    def test_markdown_images_are_removed_from_history(self):
        merged = merge_messages(
            [
                {"role": "assistant", "content": "here ![cat](https://a.example.com/c.png)"},
                {"role": "user", "content": "thanks"},
            ]
        )
        assert "https://a.example.com/c.png" not in merged
        assert "<|im_start|>assistant\nhere <|im_end|>\n" in merged

    def test_conversation_reference_skips_framing(self):
        merged = merge_messages(
            [{"role": "user", "content": "a"}, {"role": "user", "content": "b"}],
            is_ref_conversation=True,
        )
        assert merged == "a\nb\n"

    def test_only_text_parts_of_typed_content_are_kept(self):
        message = {
            "role": "user",
            "content": [
                {"type": "text", "text": "describe"},
                {"type": "image_url", "image_url": {"url": "https://a.example.com/x.png"}},
                {"type": "text", "text": "briefly"},
            ],
        }
        assert merge_messages([message]) == "describe\nbriefly\n"

    def test_missing_role_defaults_to_user(self):
        merged = merge_messages([{"content": "x"}, {"content": "y"}])
        assert merged.startswith("<|im_start|>user\nx")


class TestReferences:
    def test_urls_come_from_last_message_only(self):
        messages = [
            {"role": "user", "content": [{"type": "image_url", "image_url": {"url": "https://old.example.com/a.png"}}]},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "compare"},
                    {"type": "file", "file_url": {"url": "https://files.example.com/a.pdf"}},
                    {"type": "image_url", "image_url": {"url": "https://files.example.com/b.png"}},
                    {"type": "image_url", "image_url": {}},
                ],
            },
        ]
        assert extract_ref_file_urls(messages) == [
            "https://files.example.com/a.pdf",
            "https://files.example.com/b.png",
        ]

    def test_plain_text_has_no_references(self):
        assert extract_ref_file_urls([{"role": "user", "content": "hi"}]) == []
        assert extract_ref_file_urls([]) == []

    def test_prepare_places_references_after_text(self):
        ref = {"role": "user", "contentType": "image", "content": "https://dl.example.com/x.png"}
        contents = messages_prepare([{"role": "user", "content": "hi"}], [ref], ext={"deepThink": False})
        assert contents == [
            {"content": "hi\n", "contentType": "text", "role": "user", "ext": {"deepThink": False}},
            ref,
        ]


class TestConversationRef:
    def test_valid_reference_is_split(self):
        assert parse_conversation_ref(f"{SESSION}-m42") == (SESSION, "m42")

    def test_invalid_references_are_ignored(self):
        assert parse_conversation_ref(None) == ("", "")
        assert parse_conversation_ref("short-id") == ("", "")
