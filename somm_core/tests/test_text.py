from somm_core.voice.text import speakable_text, strip_emphasis


def test_strip_bold_and_italic():
    assert strip_emphasis("This **Merlot** is *smooth* and __round__.") == "This Merlot is smooth and round."


def test_strip_keeps_identifiers_and_arithmetic():
    assert strip_emphasis("food_pairing_notes") == "food_pairing_notes"
    assert strip_emphasis("2 * 3 * 4") == "2 * 3 * 4"


def test_strip_code_and_strike():
    assert strip_emphasis("Serve at `16C`, ~~chilled~~ cool.") == "Serve at 16C, chilled cool."


def test_strip_only_markup():
    assert strip_emphasis("**  **").strip() == ""
    assert strip_emphasis("") == ""


def test_speakable_text_emoji_and_whitespace():
    assert speakable_text("Cheers 🥂  to a **great** vintage 🍷") == "Cheers cheers to a great vintage wine"
