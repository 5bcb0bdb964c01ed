import ast

import pytest

from relive.relive_datatypes import ParseError
from relive.relive_parser import Parser


@pytest.fixture(scope="module")
def parser():
    return Parser()


def test_parses_module(parser):
    tree = parser.parse("x = 1\ndef f():\n    return x\n")
    assert isinstance(tree, ast.Module)
    assert [type(n) for n in tree.body] == [ast.Assign, ast.FunctionDef]


def test_top_level_await_is_accepted_by_parser(parser):
    tree = parser.parse("value = await fetch()\n")
    assert isinstance(tree.body[0].value, ast.Await)


@pytest.mark.parametrize("source", [
    "def f():\n",
    "x = (1,\n",
    "items = [\n    1,\n",
    's = """unterminated\n',
    "async with lock:\n",
])
def test_truncated_input_is_flagged_incomplete(parser, source):
    with pytest.raises(ParseError) as info:
        parser.parse(source)
    assert info.value.incomplete is True


def test_genuine_syntax_error_is_not_incomplete(parser):
    with pytest.raises(ParseError) as info:
        parser.parse("x = = 1\n", filename="bad.py")
    err = info.value
    assert err.incomplete is False
    assert err.line == 1
    assert err.filename == "bad.py"
    assert "line 1" in str(err)


def test_is_incomplete_on_complete_source(parser):
    assert parser.is_incomplete("x = 1") is False
    assert parser.is_incomplete("") is False
    assert parser.is_incomplete("if x:\n    y = 1") is True


def test_open_block_stays_incomplete_until_blank_line(parser):
    assert parser.is_incomplete("def f():\n    a = 3\n    return a * 2") is True
    assert parser.is_incomplete("def f():\n    a = 3\n    return a * 2\n\n") is False
