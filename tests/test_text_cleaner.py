from chatmemory.memory.cleaner import clean


def test_clean_strips_html_tags_and_collapses_whitespace() -> None:
    assert clean("<b>Hello</b>   <i>there</i>\n\n friend") == "Hello there friend"


def test_clean_removes_code_fences() -> None:
    raw = "Look at this ```python\nprint('x')\n``` and move on"
    assert clean(raw) == "Look at this and move on"


def test_clean_removes_unterminated_code_fence_to_end() -> None:
    assert clean("Before ```json\n{\"a\": 1}") == "Before"


def test_clean_drops_status_block_until_blank_line() -> None:
    raw = "She nods.\n\nStatus: HP 10\nMP 5\n\nShe leaves the room."
    assert clean(raw) == "She nods. She leaves the room."


def test_clean_drops_noise_block_at_end_of_text() -> None:
    raw = "The door creaks open.\nInventory: rope, lamp\ngold: 12"
    assert clean(raw) == "The door creaks open."


def test_clean_noise_header_inside_html_is_still_removed() -> None:
    raw = "Hi.\n\n<div>[Stats]</div> STR 5\n\nBye."
    assert clean(raw) == "Hi. Bye."


def test_clean_custom_headers_replace_defaults() -> None:
    raw = "Line one.\n\nStatus: ok\n\nNOTE: internal\n\nLine two."
    assert clean(raw, noise_headers=("NOTE:",)) == "Line one. Status: ok Line two."


def test_clean_never_raises_on_non_string_input() -> None:
    assert clean(None) == ""
    assert clean(42) == ""
    assert clean("") == ""
