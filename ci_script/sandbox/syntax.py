"""Source pre-pass for the script dialect.

Scripts are Python-syntax with two additions the Python parser does not
accept:

* ``module::member`` addresses a member of a registered static module and
  becomes ``module. member``;
* a custom statement keyword followed directly by an expression, e.g.
  ``cargo "bench --all"``, becomes a call: ``cargo("bench --all")``.

Both rewrites keep every token on its original line so positions in later
error messages still match the script as written.
"""

from __future__ import annotations

import io
import keyword
import tokenize
from typing import Iterable, List, Tuple

from ci_script.errors import ScriptParseError

# Tokens that may start the argument expression of a custom keyword.
_EXPR_START = {tokenize.NAME, tokenize.NUMBER, tokenize.STRING}
_FSTRING_START = getattr(tokenize, "FSTRING_START", None)
if _FSTRING_START is not None:
    _EXPR_START.add(_FSTRING_START)

_OPEN = {"(", "[", "{"}
_CLOSE = {")", "]", "}"}
_LINE_END = {tokenize.NEWLINE, tokenize.COMMENT, tokenize.ENDMARKER}

Edit = Tuple[Tuple[int, int], Tuple[int, int], str]


def _tokens(source: str) -> List[tokenize.TokenInfo]:
    try:
        return list(tokenize.generate_tokens(io.StringIO(source).readline))
    except (tokenize.TokenError, SyntaxError) as exc:
        line = getattr(exc, "lineno", None)
        if line is None and len(exc.args) > 1 and isinstance(exc.args[1], tuple):
            line = exc.args[1][0]
        raise ScriptParseError(str(exc.args[0]) if exc.args else "bad token", line)


def _significant(tokens: Iterable[tokenize.TokenInfo]) -> List[tokenize.TokenInfo]:
    return [
        tok for tok in tokens if tok.type not in (tokenize.NL, tokenize.INDENT, tokenize.DEDENT)
    ]


def _module_edits(toks: List[tokenize.TokenInfo], modules: Iterable[str]) -> List[Edit]:
    names = set(modules)
    edits: List[Edit] = []
    for i in range(1, len(toks) - 2):
        first, second = toks[i], toks[i + 1]
        if not (first.type == tokenize.OP and first.string == ":"):
            continue
        if not (second.type == tokenize.OP and second.string == ":"):
            continue
        if first.end != second.start:
            continue
        before, after = toks[i - 1], toks[i + 2]
        if before.type == tokenize.NAME and before.string in names and after.type == tokenize.NAME:
            edits.append((first.start, second.end, ". "))
    return edits


def _keyword_edits(toks: List[tokenize.TokenInfo], keywords: Iterable[str]) -> List[Edit]:
    words = set(keywords)
    edits: List[Edit] = []
    for i, tok in enumerate(toks[:-1]):
        if tok.type != tokenize.NAME or tok.string not in words:
            continue
        nxt = toks[i + 1]
        if nxt.type not in _EXPR_START or nxt.start[0] != tok.end[0]:
            continue
        if nxt.type == tokenize.NAME and keyword.iskeyword(nxt.string):
            if nxt.string not in ("True", "False", "None"):
                continue
        depth = 0
        end = None
        for follow in toks[i + 1 :]:
            if follow.type in _LINE_END and depth == 0:
                break
            if follow.type == tokenize.OP:
                if follow.string in _OPEN:
                    depth += 1
                elif follow.string in _CLOSE:
                    if depth == 0:
                        break
                    depth -= 1
                elif depth == 0 and follow.string in (":", ",", ";", "="):
                    break
            end = follow.end
        if end is None:
            raise ScriptParseError(f"Expected an expression after '{tok.string}'", tok.start[0])
        edits.append((tok.end, nxt.start, "("))
        edits.append((end, end, ")"))
    return edits


def _apply(source: str, edits: List[Edit]) -> str:
    lines = source.splitlines(keepends=True)
    if not lines:
        return source
    # Apply right-to-left so earlier positions stay valid.
    for (srow, scol), (erow, ecol), text in sorted(edits, key=lambda e: (e[0], e[1]), reverse=True):
        if srow != erow:
            raise ScriptParseError("Unsupported multi-line construct", srow)
        if srow > len(lines):
            lines.append("")
        line = lines[srow - 1]
        lines[srow - 1] = line[:scol] + text + line[ecol:]
    return "".join(lines)


def desugar(source: str, *, modules: Iterable[str] = (), keywords: Iterable[str] = ()) -> str:
    """Rewrite the dialect's extra forms into plain Python syntax."""
    if not source.endswith("\n"):
        source += "\n"
    toks = _significant(_tokens(source))
    edits = _module_edits(toks, modules) + _keyword_edits(toks, keywords)
    if not edits:
        return source
    return _apply(source, edits)


__all__ = ["desugar"]
