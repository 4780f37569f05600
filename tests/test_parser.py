"""Tests for the streaming tool-call extractor (lens/agent/parser.py)."""

import pytest

from lens.agent.models import ToolCall
from lens.agent.parser import CLOSE_TAG, OPEN_TAG, ToolCallExtractor, parse_tool_block
from tests.conftest import tool_block

RESPONSE = (
    "Let me look that up for you. "
    + tool_block("product_search", '{"query": "python books", "topK": 3}')
    + " trailing words "
    + tool_block("knowledge_search", '{"query": "shipping"}')
    + "done <to"
)


def _run(fragments: list[str]) -> tuple[str, list[ToolCall]]:
    """Feed fragments one at a time; return all emitted text and calls."""
    extractor = ToolCallExtractor()
    text_parts: list[str] = []
    calls: list[ToolCall] = []
    for fragment in fragments:
        result = extractor.add_fragment(fragment)
        text_parts.append(result.text)
        calls.extend(result.tool_calls or [])
    text_parts.append(extractor.flush())
    return "".join(text_parts), calls


def _chunk(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


# ---------------------------------------------------------------------------
# parse_tool_block
# ---------------------------------------------------------------------------


class TestParseToolBlock:
    def test_name_and_json_parameters(self):
        call = parse_tool_block('\nname: knowledge_search\nparameters: {"query": "returns", "topK": 2}\n')
        assert call == ToolCall(name="knowledge_search", parameters={"query": "returns", "topK": 2})

    def test_missing_parameters_gives_empty_dict(self):
        call = parse_tool_block("name: scroll\n")
        assert call == ToolCall(name="scroll", parameters={})

    def test_malformed_json_kept_as_raw(self):
        call = parse_tool_block('name: click\nparameters: {"selector": "#buy",}\n')
        assert call is not None
        assert call.name == "click"
        assert call.parameters == {"raw": '{"selector": "#buy",}'}

    def test_no_name_returns_none(self):
        assert parse_tool_block('parameters: {"a": 1}') is None

    def test_name_is_stripped(self):
        call = parse_tool_block("name:   navigate   \nparameters: {}")
        assert call.name == "navigate"

    def test_multiline_parameters(self):
        body = 'name: ai_page_generate\nparameters: {\n  "title": "Picks",\n  "books": [{"id": 1}]\n}\n'
        call = parse_tool_block(body)
        assert call.parameters == {"title": "Picks", "books": [{"id": 1}]}


# ---------------------------------------------------------------------------
# ToolCallExtractor
# ---------------------------------------------------------------------------


class TestToolCallExtractor:
    def test_plain_text_withholds_lookback(self):
        extractor = ToolCallExtractor()
        result = extractor.add_fragment("Hello world")
        assert result.text == "Hello "
        assert result.tool_calls is None
        assert extractor.flush() == "world"

    def test_short_fragment_fully_withheld(self):
        extractor = ToolCallExtractor()
        assert extractor.add_fragment("Hi").text == ""
        assert extractor.flush() == "Hi"

    def test_single_block_in_one_fragment(self):
        extractor = ToolCallExtractor()
        result = extractor.add_fragment("Sure. " + tool_block("scroll", '{"direction": "down"}'))
        assert result.text == "Sure. "
        assert result.tool_calls == [ToolCall(name="scroll", parameters={"direction": "down"})]

    def test_open_tag_split_across_fragments(self):
        extractor = ToolCallExtractor()
        first = extractor.add_fragment("Looking <to")
        assert OPEN_TAG[:3] not in first.text
        second = extractor.add_fragment('ol>name: click\nparameters: {"selector": "#a"}</tool>')
        assert first.text + second.text == "Looking "
        assert second.tool_calls == [ToolCall(name="click", parameters={"selector": "#a"})]

    def test_close_tag_split_across_fragments(self):
        extractor = ToolCallExtractor()
        r1 = extractor.add_fragment("<tool>name: scroll\nparameters: {}</to")
        assert r1.tool_calls is None
        assert extractor.in_block
        r2 = extractor.add_fragment("ol>after")
        assert r2.tool_calls == [ToolCall(name="scroll", parameters={})]
        assert not extractor.in_block
        assert r2.text + extractor.flush() == "after"

    def test_block_content_never_emitted(self):
        text, _ = _run(_chunk(tool_block("navigate", '{"url": "https://shop.example"}'), 4))
        assert text == ""

    def test_two_blocks_in_one_fragment(self):
        extractor = ToolCallExtractor()
        result = extractor.add_fragment(tool_block("click") + tool_block("scroll"))
        assert [c.name for c in result.tool_calls] == ["click", "scroll"]

    def test_close_then_text_then_open_in_one_fragment(self):
        extractor = ToolCallExtractor()
        extractor.add_fragment("<tool>name: click\nparameters: {}")
        result = extractor.add_fragment("</tool> middle text <tool>name: scroll\n</tool>")
        assert [c.name for c in result.tool_calls] == ["click", "scroll"]
        assert result.text == " middle text "

    def test_only_newly_completed_calls_returned(self):
        extractor = ToolCallExtractor()
        first = extractor.add_fragment(tool_block("click"))
        second = extractor.add_fragment(" and then ")
        assert len(first.tool_calls) == 1
        assert second.tool_calls is None

    def test_malformed_block_does_not_break_following_block(self):
        stream = tool_block("click", '{"selector": oops}') + tool_block("scroll", '{"amount": 200}')
        _, calls = _run(_chunk(stream, 5))
        assert calls[0] == ToolCall(name="click", parameters={"raw": '{"selector": oops}'})
        assert calls[1] == ToolCall(name="scroll", parameters={"amount": 200})

    def test_flush_discards_unterminated_block(self):
        extractor = ToolCallExtractor()
        extractor.add_fragment("Before <tool>name: click\nparameters: {")
        assert extractor.flush() == ""
        assert not extractor.in_block

    def test_flush_resets_state(self):
        extractor = ToolCallExtractor()
        extractor.add_fragment("<tool>name: x")
        extractor.flush()
        result = extractor.add_fragment("plain text here")
        assert result.text == "plain text"

    def test_nameless_block_is_dropped(self):
        text, calls = _run(["<tool>parameters: {}</tool>hello there"])
        assert calls == []
        assert text == "hello there"

    def test_close_tag_outside_block_is_plain_text(self):
        text, calls = _run(["stray " + CLOSE_TAG + " text"])
        assert calls == []
        assert text == "stray </tool> text"


class TestFragmentationInvariance:
    """Any contiguous split of a response extracts the same text and calls."""

    @pytest.fixture(scope="class")
    def whole(self):
        return _run([RESPONSE])

    def test_whole_response(self, whole):
        text, calls = whole
        assert text == "Let me look that up for you.  trailing words done <to"
        assert [c.name for c in calls] == ["product_search", "knowledge_search"]
        assert calls[0].parameters == {"query": "python books", "topK": 3}

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 6, 7, 11, 64])
    def test_fixed_size_chunks(self, whole, size):
        assert _run(_chunk(RESPONSE, size)) == whole

    def test_every_two_way_split(self, whole):
        for cut in range(len(RESPONSE) + 1):
            assert _run([RESPONSE[:cut], RESPONSE[cut:]]) == whole, f"split at {cut}"

    def test_uneven_chunks_with_empty_fragments(self, whole):
        sizes = [1, 0, 4, 9, 2, 0, 13, 6, 1, 30]
        fragments, pos, i = [], 0, 0
        while pos < len(RESPONSE):
            size = sizes[i % len(sizes)]
            fragments.append(RESPONSE[pos:pos + size])
            pos += size
            i += 1
        assert _run(fragments) == whole
