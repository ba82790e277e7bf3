from main import ResponseParser, SYSTEM_PROMPT, SCRIPT_INSTRUCTION, build_messages
from commands import collect_content


def test_new_session_starts_with_system_message():
    messages = build_messages("What does this do?", "FILE_NAME: a.py\nFILE_CONTENT: pass")

    assert [m["role"] for m in messages] == ["system", "user"]
    assert messages[0]["content"] == SYSTEM_PROMPT


def test_existing_session_appends_one_user_message():
    previous = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "QUESTION: first"},
        {"role": "assistant", "content": "answer"},
    ]
    snapshot = [dict(m) for m in previous]

    messages = build_messages("second", "FILE_NAME: a.py\nFILE_CONTENT: pass", previous)

    assert messages[:-1] == snapshot
    assert len(messages) == len(previous) + 1
    assert messages[-1]["role"] == "user"
    assert previous == snapshot, "Prior transcript must not be mutated"


def test_user_message_embeds_question_and_file_block(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "a.js").write_text("let x=1;", encoding="utf-8")

    block = collect_content("a.js")
    user = build_messages("Add a comment", block)[-1]

    assert user["content"] == f"QUESTION: Add a comment\n{block}\n{SCRIPT_INSTRUCTION}"
    assert "FILE_NAME: a.js" in user["content"]
    assert "let x=1;" in user["content"]


def test_no_fences_yields_empty_string():
    assert ResponseParser.extract_code("Just prose, no code here.") == ""
    assert ResponseParser.extract_code("") == ""


def test_single_block_is_trimmed():
    answer = "Here you go:\n```python\n\n  import os\nprint(os.getcwd())\n\n```\nDone."
    assert ResponseParser.extract_code(answer) == "import os\nprint(os.getcwd())"


def test_two_blocks_joined_in_order():
    answer = "First:\n```python\nprint(1)\n```\nThen:\n```\nprint(2)\n```\n"
    assert ResponseParser.extract_code(answer) == "print(1)\nprint(2)"


def test_other_languages_are_skipped():
    answer = "```bash\npip install rich\n```\n```py\nprint('ok')\n```\n```Python3\nprint('also')\n```"
    assert ResponseParser.extract_code(answer) == "print('ok')\nprint('also')"


def test_info_string_after_tag_is_ignored():
    answer = "```python title=fix.py\nx = 1\n```"
    assert ResponseParser.extract_code(answer) == "x = 1"


def test_empty_saved_transcript_starts_over_with_system_message():
    messages = build_messages("q", "FILE_NAME: a.py\nFILE_CONTENT: pass", [])

    assert [m["role"] for m in messages] == ["system", "user"]
    assert messages[0]["content"] == SYSTEM_PROMPT


def test_one_line_fence_is_untagged_code():
    assert ResponseParser.extract_code("Run ```print(1)``` to check.") == "print(1)"
    assert ResponseParser.extract_code("```print(1)```\n```python\nprint(2)\n```") == "print(1)\nprint(2)"
