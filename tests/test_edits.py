import pytest

from lucidcoder.automation.edits import Edit, Replacement, ReplacementError, apply_replacements, parse_edits
from lucidcoder.errors import EditsParseError


def test_parse_edits_object_form():
    edits = parse_edits('{"edits": [{"type": "upsert", "path": "./src/a.py", "content": "x = 1\\n"}]}')
    assert len(edits) == 1
    assert edits[0].type == "upsert"
    assert edits[0].path == "src/a.py"


def test_parse_edits_bare_list_in_fences():
    text = '```json\n[{"type": "delete", "path": "old.py"}]\n```'
    assert [e.path for e in parse_edits(text)] == ["old.py"]


def test_parse_edits_recovers_json_from_prose():
    text = 'Sure! Here you go:\n{"edits": [{"action": "create", "file": "b.py", "content": ""}]}\nDone.'
    [edit] = parse_edits(text)
    assert edit.type == "upsert"
    assert edit.path == "b.py"


def test_parse_edits_drops_invalid_entries():
    text = '{"edits": [{"type": "modify", "path": "a.py"}, {"type": "teleport", "path": "b.py"}, {"type": "delete", "path": "c.py"}]}'
    assert [e.path for e in parse_edits(text)] == ["c.py"]


def test_parse_edits_empty_responses():
    assert parse_edits("") == []
    assert parse_edits('{"edits": []}') == []
    assert parse_edits('{"message": "nothing to do"}') == []


def test_parse_edits_unparseable():
    with pytest.raises(EditsParseError) as excinfo:
        parse_edits("I could not figure this out", stage="tests")
    assert excinfo.value.stage == "tests"
    assert excinfo.value.kind == "parse-error"


def test_modify_requires_replacements():
    with pytest.raises(ValueError):
        Edit(type="modify", path="a.py")


def test_exact_replacement():
    content = "def greet():\n    return 'hi'\n"
    result = apply_replacements(content, [Replacement(search="'hi'", replace="'hello'")])
    assert result == "def greet():\n    return 'hello'\n"


def test_whitespace_insensitive_replacement():
    content = "if (ready) {\n    start();\n}\n"
    result = apply_replacements(content, [{"search": "if (ready) {\n  start();", "replace": "if (ready) {\n    go();"}])
    assert result == "if (ready) {\n    go();\n}\n"


def test_replacements_apply_in_order():
    result = apply_replacements("a b c", [{"search": "a", "replace": "x"}, {"search": "x b", "replace": "y"}])
    assert result == "y c"


def test_replacement_not_found():
    with pytest.raises(ReplacementError, match="not found") as excinfo:
        apply_replacements("abc", [{"search": "zzz", "replace": ""}])
    assert excinfo.value.search == "zzz"


def test_replacement_ambiguous():
    with pytest.raises(ReplacementError, match="ambiguous"):
        apply_replacements("x = 1\nx = 1\n", [{"search": "x = 1", "replace": "x = 2"}])


def test_invalid_replacement_entry():
    with pytest.raises(ReplacementError, match="Invalid replacement entry"):
        apply_replacements("abc", [{"search": "", "replace": "x"}])
