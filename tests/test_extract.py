from agentcanvas.search.extract import detect_tool_noise, extract_content


def test_short_text_is_noise() -> None:
    assert detect_tool_noise("")
    assert detect_tool_noise("x" * 49)


def test_plain_fifty_chars_is_not_noise() -> None:
    assert not detect_tool_noise("a" * 50)


def test_preamble_boundary() -> None:
    assert detect_tool_noise("Let me search " + "x" * 85)
    assert not detect_tool_noise("Let me search " + "x" * 86)


def test_tool_markers_do_not_count_towards_length() -> None:
    text = "[Tool: Read] [Tool: Grep] [Tool: Bash] [Tool: Edit] ok"
    assert len(text) >= 50
    assert detect_tool_noise(text)


def test_user_blocks_keep_only_text() -> None:
    record = {
        "type": "user",
        "message": {
            "content": [
                {"type": "text", "text": "Part 1"},
                {"type": "tool_result", "content": "x"},
                {"type": "text", "text": "Part 2"},
            ]
        },
    }
    assert extract_content(record) == "Part 1\nPart 2"


def test_user_string_content() -> None:
    assert extract_content({"type": "user", "message": {"content": "hi there"}}) == "hi there"


def test_long_assistant_text_is_truncated() -> None:
    text = "".join(chr(ord("a") + i % 26) for i in range(900))
    record = {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}

    out = extract_content(record)

    assert out.startswith(text[:500])
    assert "\n...\n" in out
    assert out.endswith(text[-200:])
    assert len(out) < len(text)


def test_assistant_tool_use_only_is_empty() -> None:
    record = {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Read", "input": {}}]}}
    assert extract_content(record) == ""


def test_other_records_are_empty() -> None:
    assert extract_content({"type": "summary", "summary": "x"}) == ""
    assert extract_content({"type": "user"}) == ""
