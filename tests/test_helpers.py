"""Tests for credential, cookie, variant and valve helpers."""

from __future__ import annotations

import random

import pytest
from pydantic import ValidationError

from tongyi_bridge.core.config import AGENT_HOST, LAW_AGENT_ID, QWEN_HOST, SOLVE_AGENT_ID, Valves
from tongyi_bridge.core.utils import _truncate, generate_cookie, new_uuid, pick_credential, token_split
from tongyi_bridge.models.variants import DIGITAL_PEOPLE_MODEL, resolve_variant


class TestCredentials:
    def test_bearer_prefix_and_commas(self):
        assert token_split("Bearer t1, t2 ,,t3") == ["t1", "t2", "t3"]

    def test_empty_header(self):
        assert token_split(None) == []
        assert token_split("Bearer ") == []

    def test_pick_uses_supplied_rng(self):
        tokens = ["a", "b", "c"]
        picks = {pick_credential(tokens, random.Random(seed)) for seed in range(50)}
        assert picks <= set(tokens)
        assert pick_credential(tokens, random.Random(7)) == pick_credential(tokens, random.Random(7))

    def test_pick_requires_tokens(self):
        with pytest.raises(ValueError):
            pick_credential([])


class TestCookie:
    def test_short_ticket_uses_sso_cookie(self):
        cookie = generate_cookie("ticket")
        assert cookie.startswith("tongyi_sso_ticket=ticket; ")
        assert "aliyun_choice=intl" in cookie

    def test_long_ticket_uses_aliyun_cookie(self):
        ticket = "x" * 101
        assert generate_cookie(ticket).startswith(f"login_aliyunid_ticket={ticket}; ")

    def test_uuid_without_separator(self):
        assert len(new_uuid(separator=False)) == 32

    def test_truncate(self):
        assert _truncate("abc", 5) == "abc"
        assert _truncate("abcdef", 3) == "abc... (3 more chars)"


class TestVariants:
    def test_unknown_model_falls_back_to_qwen(self):
        assert resolve_variant("gpt-4").name == "qwen"
        assert resolve_variant(None).name == "qwen"

    def test_qwen_params_and_headers(self, valves):
        variant = resolve_variant("qwen")
        params = variant.build_params(valves, search_type="web")
        assert set(params) == {"fileUploadBatchId", "searchType"}
        assert params["searchType"] == "web"
        assert variant.base_url(valves) == QWEN_HOST
        assert variant.content_ext() is None
        assert "Referer" in variant.headers(valves, "t")

    @pytest.mark.parametrize(
        ("model", "agent_id"),
        [("law", LAW_AGENT_ID), ("solve_txt", SOLVE_AGENT_ID), ("solve_pic", SOLVE_AGENT_ID)],
    )
    def test_agent_variants(self, valves, model, agent_id):
        variant = resolve_variant(model)
        assert variant.accept_untyped_content
        assert variant.base_url(valves) == AGENT_HOST
        assert variant.build_params(valves)["agentId"] == agent_id
        headers = variant.headers(valves, "t", accept="text/event-stream")
        assert headers["Accept"] == "text/event-stream"
        assert headers["Origin"] == "https://www.tongyi.com"
        assert headers["Referer"].endswith(f"agentId={agent_id}")
        assert variant.content_ext() == {
            "searchType": "",
            "pptGenerate": False,
            "deepThink": False,
            "deepResearch": False,
        }

    def test_digital_people_reads_agent_id_from_valves(self, valves):
        variant = resolve_variant(DIGITAL_PEOPLE_MODEL)
        assert variant.kind == "video"
        assert variant.resolve_agent_id(valves) == "A-DIGITAL-PEOPLE"


class TestValves:
    def test_size_limit_in_bytes(self):
        assert Valves(FILE_MAX_SIZE_MB=2).file_max_size_bytes == 2 * 1024 * 1024

    @pytest.mark.parametrize(
        "overrides",
        [
            {"MAX_ATTEMPTS": 0},
            {"FILE_MAX_SIZE_MB": 0},
            {"SCAN_MAX_ATTEMPTS": 0},
            {"STREAM_QUEUE_PUT_TIMEOUT_SECONDS": 0},
            {"LOG_LEVEL": "LOUD"},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            Valves(**overrides)
