"""
Structural parser for Terraform HCL.

Turns configuration text into a ParsedConfiguration without evaluating
anything: references, function calls and heredoc bodies are preserved as
opaque expression values. Block boundaries are found by balanced brace
counting that skips string literals (including ${...} templates), comments
and heredocs, so arbitrarily deep nesting is handled.

The parser never raises for string input. Constructs it does not understand
degrade to opaque values or are skipped with an entry in parse_warnings.
"""
from typing import Any, Dict, List, Optional, Tuple
import logging
import re
import textwrap

from iac_engine.domain.hcl_models import HclBlock, HclValue, ParsedConfiguration, ValueKind


logger = logging.getLogger(__name__)


TOP_LEVEL_KEYWORDS = {
    "resource", "data", "module", "variable", "output", "provider", "terraform", "locals",
}

_IDENT_RE = re.compile(r"[A-Za-z_][\w\-]*")
_HEREDOC_RE = re.compile(r"<<(-?)([A-Za-z_]\w*)[ \t]*\r?\n")
_INT_RE = re.compile(r"^-?\d+$")
_FLOAT_RE = re.compile(r"^-?(\d+\.\d+([eE][+-]?\d+)?|\d+[eE][+-]?\d+)$")
_FOR_RE = re.compile(r"^\s*for\s")
_PAIRS = {"{": "}", "[": "]", "(": ")"}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


# --- Low-level scanning ----------------------------------------------------

def _closing_quote(src: str, start: int) -> int:
    """
    Index of the quote closing the string literal opened at src[start].

    Returns -1 if the literal is unterminated on its line.
    """
    n = len(src)
    i = start + 1
    while i < n:
        ch = src[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i
        if ch in "$%" and i + 1 < n:
            if src[i + 1] == ch:
                # $${ and %%{ are literal escapes
                i += 2
                continue
            if src[i + 1] == "{":
                i = _skip_template(src, i + 2)
                continue
        if ch == "\n":
            return -1
        i += 1
    return -1


def _skip_template(src: str, i: int) -> int:
    """Skip a ${...} template body; i points just past the opening brace."""
    depth = 1
    n = len(src)
    while i < n:
        ch = src[i]
        if ch == '"':
            i = _skip_string(src, i)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return n


def _skip_string(src: str, i: int) -> int:
    """Return the index just past the string literal opened at src[i]."""
    end = _closing_quote(src, i)
    if end != -1:
        return end + 1
    # Unterminated literal stops at the line break
    newline = src.find("\n", i)
    return len(src) if newline == -1 else newline


def _comment_end(src: str, i: int) -> int:
    """If a comment starts at src[i], return where it ends, else -1."""
    if src[i] == "#" or src.startswith("//", i):
        newline = src.find("\n", i)
        return len(src) if newline == -1 else newline
    if src.startswith("/*", i):
        close = src.find("*/", i + 2)
        return len(src) if close == -1 else close + 2
    return -1


def _heredoc_at(src: str, i: int) -> Optional[Tuple[int, str]]:
    """
    If a heredoc starts at src[i], return (end_index, body).

    end_index points at the line break after the terminator line. The
    indented form (<<-EOF) strips common leading whitespace.
    """
    match = _HEREDOC_RE.match(src, i)
    if not match:
        return None
    strip_indent = bool(match.group(1))
    marker = match.group(2)
    n = len(src)
    pos = match.end()
    lines: List[str] = []
    while pos < n:
        line_end = src.find("\n", pos)
        if line_end == -1:
            line_end = n
        line = src[pos:line_end].rstrip("\r")
        if line.strip() == marker:
            body = "\n".join(lines)
            return line_end, textwrap.dedent(body) if strip_indent else body
        lines.append(line)
        pos = line_end + 1
    body = "\n".join(lines)
    return n, textwrap.dedent(body) if strip_indent else body


def _find_closing(src: str, open_index: int) -> int:
    """
    Return the index of the bracket closing the one at open_index.

    Brackets inside strings, comments and heredocs are ignored. Returns -1
    when the input ends first.
    """
    opener = src[open_index]
    closer = _PAIRS[opener]
    depth = 0
    i = open_index
    n = len(src)
    while i < n:
        ch = src[i]
        if ch == '"':
            i = _skip_string(src, i)
            continue
        if ch in "#/":
            end = _comment_end(src, i)
            if end != -1:
                i = end
                continue
        if ch == "<":
            heredoc = _heredoc_at(src, i)
            if heredoc:
                i = heredoc[0]
                continue
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _split_elements(inner: str) -> List[str]:
    """
    Split the inside of a [...] list into element source texts.

    Splits on commas and line breaks at depth 0, drops comments and empty
    elements (which strips trailing commas).
    """
    parts: List[str] = []
    pieces: List[str] = []
    depth = 0
    segment_start = 0
    i = 0
    n = len(inner)
    while i < n:
        ch = inner[i]
        if ch == '"':
            i = _skip_string(inner, i)
            continue
        if ch in "#/":
            end = _comment_end(inner, i)
            if end != -1:
                pieces.append(inner[segment_start:i])
                i = end
                segment_start = i
                continue
        if ch == "<":
            heredoc = _heredoc_at(inner, i)
            if heredoc:
                i = heredoc[0]
                continue
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif depth == 0 and ch in ",\n":
            pieces.append(inner[segment_start:i])
            parts.append("".join(pieces))
            pieces = []
            i += 1
            segment_start = i
            continue
        i += 1
    pieces.append(inner[segment_start:])
    parts.append("".join(pieces))
    return [part.strip() for part in parts if part.strip()]


def _unescape(text: str) -> str:
    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\" and i + 1 < n:
            nxt = text[i + 1]
            if nxt in _ESCAPES:
                out.append(_ESCAPES[nxt])
                i += 2
                continue
            if nxt == "u":
                hex_part = text[i + 2:i + 6]
                if len(hex_part) == 4 and all(c in "0123456789abcdefABCDEF" for c in hex_part):
                    out.append(chr(int(hex_part, 16)))
                    i += 6
                    continue
        out.append(ch)
        i += 1
    return "".join(out)


def _line_of(src: str, index: int) -> int:
    return src.count("\n", 0, index) + 1


# --- Parser ----------------------------------------------------------------

class HclParser:
    """
    Parser for Terraform configuration text.

    An instance keeps per-call warning state; use one instance per parse
    or the module-level parse() function.
    """

    def __init__(self):
        self._warnings: List[str] = []

    def parse(self, text: str) -> ParsedConfiguration:
        """
        Parse configuration text.

        Args:
            text: Raw HCL source

        Returns:
            ParsedConfiguration with blocks in declaration order

        Raises:
            TypeError: If text is not a string
        """
        if not isinstance(text, str):
            raise TypeError(f"Configuration text must be str, got {type(text).__name__}")

        self._warnings = []
        result = ParsedConfiguration()
        n = len(text)
        i = 0

        while i < n:
            ch = text[i]
            if ch.isspace():
                i += 1
                continue
            if ch in "#/":
                end = _comment_end(text, i)
                if end != -1:
                    i = end
                    continue

            match = _IDENT_RE.match(text, i)
            if not match:
                self._warn(f"Unexpected character {ch!r} on line {_line_of(text, i)}")
                i = self._next_line(text, i)
                continue

            keyword = match.group(0)
            start_line = _line_of(text, match.start())
            labels, j = self._read_labels(text, match.end())

            # The opening brace may sit on a later line
            j = self._skip_blank(text, j)
            if j >= n or text[j] != "{":
                self._warn(f"Expected '{{' after '{keyword}' on line {start_line}")
                i = self._next_line(text, match.start())
                continue

            close = _find_closing(text, j)
            if close == -1:
                self._warn(f"Unbalanced braces in '{keyword}' block starting on line {start_line}")
                body = text[j + 1:]
                end = n
                end_line = _line_of(text, n)
            else:
                body = text[j + 1:close]
                end = close + 1
                end_line = _line_of(text, close)

            if keyword not in TOP_LEVEL_KEYWORDS:
                self._warn(f"Skipped unsupported top-level block '{keyword}' on line {start_line}")
                i = end
                continue

            try:
                properties = self._parse_body(body)
            except Exception as error:
                # Keep the rest of the document usable
                logger.warning(f"Failed to parse '{keyword}' block on line {start_line}: {error}")
                self._warn(f"Could not parse '{keyword}' block on line {start_line}")
                properties = {}

            self._attach(
                result,
                keyword,
                labels,
                properties,
                start_line,
                end_line,
                text[match.start():end],
            )
            i = end

        result.parse_warnings = list(self._warnings)
        return result

    # --- Block assembly ----------------------------------------------------

    def _attach(
        self,
        result: ParsedConfiguration,
        keyword: str,
        labels: List[str],
        properties: Dict[str, HclValue],
        start_line: int,
        end_line: int,
        raw: str
    ) -> None:
        """Place a parsed top-level block into the configuration."""
        if keyword in ("resource", "data"):
            if len(labels) < 2:
                self._warn(f"'{keyword}' block on line {start_line} needs a type and a name")
                return
            block = HclBlock(keyword, labels[0], labels[1], properties, start_line, end_line, raw)
            if keyword == "resource":
                result.resources.append(block)
            else:
                result.data_sources.append(block)
            return

        if keyword == "terraform":
            result.terraform.update(properties)
            required = properties.get("required_providers")
            if required is not None and required.kind == ValueKind.MAP:
                for name in required.value:
                    if name != "_labels":
                        self._add_provider(result, name)
            return

        if keyword == "locals":
            result.locals.update(properties)
            return

        if not labels:
            self._warn(f"'{keyword}' block on line {start_line} needs a name")
            return
        name = labels[0]

        if keyword == "module":
            result.modules.append(
                HclBlock("module", "module", name, properties, start_line, end_line, raw)
            )
        elif keyword == "provider":
            alias = properties.get("alias")
            block_name = alias.value if alias is not None and alias.kind == ValueKind.STRING else name
            result.provider_blocks.append(
                HclBlock("provider", name, block_name, properties, start_line, end_line, raw)
            )
            self._add_provider(result, name)
        elif keyword == "variable":
            result.variables[name] = properties
        elif keyword == "output":
            result.outputs[name] = properties

    @staticmethod
    def _add_provider(result: ParsedConfiguration, name: str) -> None:
        if name not in result.providers:
            result.providers.append(name)

    # --- Block bodies ------------------------------------------------------

    def _parse_body(self, src: str, inline: bool = False) -> Dict[str, HclValue]:
        """
        Parse the inside of a block or inline map.

        Args:
            src: Text between the braces
            inline: True for {...} map literals, which also accept ':' and
                    comma separators

        Returns:
            Property map; repeated nested blocks are collected into a list
        """
        properties: Dict[str, HclValue] = {}
        block_keys = set()
        n = len(src)
        i = 0

        while i < n:
            ch = src[i]
            if ch in " \t\r\n,":
                i += 1
                continue
            if ch in "#/":
                end = _comment_end(src, i)
                if end != -1:
                    i = end
                    continue

            key, j = self._read_key(src, i)
            if key is None:
                _, end = self._read_value(src, i, stop_at_comma=inline)
                skipped = src[i:end].strip()
                self._warn(f"Skipped unrecognized content: {skipped[:60]}")
                i = max(end, i + 1)
                continue

            k = j
            while k < n and src[k] in " \t":
                k += 1

            is_assignment = k < n and (
                (src[k] == "=" and not src.startswith("==", k))
                or (inline and src[k] == ":")
            )
            if is_assignment:
                value, i = self._read_value(src, k + 1, stop_at_comma=inline)
                properties[key] = value
                block_keys.discard(key)
                continue

            labels, k = self._read_labels(src, k)
            k = self._skip_blank(src, k)
            if k < n and src[k] == "{":
                close = _find_closing(src, k)
                if close == -1:
                    self._warn(f"Unbalanced braces in nested block '{key}'")
                    body = src[k + 1:]
                    i = n
                else:
                    body = src[k + 1:close]
                    i = close + 1
                entries = self._parse_body(body)
                if labels:
                    entries["_labels"] = HclValue.list_of([HclValue.string(label) for label in labels])
                self._add_nested_block(properties, block_keys, key, HclValue.map_of(entries))
                continue

            self._warn(f"Property '{key}' has no value")
            i = self._next_line(src, j)

        return properties

    @staticmethod
    def _add_nested_block(
        properties: Dict[str, HclValue],
        block_keys: set,
        key: str,
        block: HclValue
    ) -> None:
        """Store a nested block, turning repeats into a list."""
        if key not in block_keys:
            properties[key] = block
            block_keys.add(key)
            return
        existing = properties[key]
        if existing.kind == ValueKind.LIST:
            properties[key] = HclValue.list_of(existing.value + [block])
        else:
            properties[key] = HclValue.list_of([existing, block])

    # --- Values ------------------------------------------------------------

    def _read_value(self, src: str, i: int, stop_at_comma: bool = False) -> Tuple[HclValue, int]:
        """
        Read one value starting at src[i].

        The value runs to the end of the line at bracket depth 0, so arrays,
        maps and calls may span lines. A trailing comment is not part of the
        value.
        """
        n = len(src)
        while i < n and src[i] in " \t":
            i += 1

        heredoc = _heredoc_at(src, i) if src.startswith("<<", i) else None
        if heredoc:
            end, body = heredoc
            return HclValue.expression(body), end

        start = i
        depth = 0
        while i < n:
            ch = src[i]
            if ch == '"':
                i = _skip_string(src, i)
                continue
            if ch in "#/":
                end = _comment_end(src, i)
                if end != -1:
                    if depth == 0:
                        break
                    i = end
                    continue
            if ch == "<" and depth > 0:
                nested = _heredoc_at(src, i)
                if nested:
                    i = nested[0]
                    continue
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                if depth == 0:
                    break
                depth -= 1
            elif depth == 0 and (ch == "\n" or (stop_at_comma and ch == ",")):
                break
            i += 1

        return self._classify(src[start:i].strip()), i

    def _classify(self, raw: str) -> HclValue:
        """
        Classify value text.

        Precedence: true/false/null, number, quoted string, array, inline
        map, otherwise an opaque expression kept verbatim.
        """
        if raw == "":
            return HclValue.null()
        if raw == "true":
            return HclValue.boolean(True)
        if raw == "false":
            return HclValue.boolean(False)
        if raw == "null":
            return HclValue.null()
        if _INT_RE.match(raw):
            return HclValue.integer(int(raw))
        if _FLOAT_RE.match(raw):
            return HclValue.number(float(raw))
        if raw[0] == '"' and _closing_quote(raw, 0) == len(raw) - 1:
            return HclValue.string(_unescape(raw[1:-1]))
        if raw[0] in "[{" and _find_closing(raw, 0) == len(raw) - 1:
            inner = raw[1:-1]
            if _FOR_RE.match(inner):
                # for-expressions are not literals
                return HclValue.expression(raw)
            if raw[0] == "[":
                return HclValue.list_of([self._classify(item) for item in _split_elements(inner)])
            return HclValue.map_of(self._parse_body(inner, inline=True))
        if raw.startswith("<<"):
            heredoc = _heredoc_at(raw, 0)
            if heredoc:
                return HclValue.expression(heredoc[1])
        return HclValue.expression(raw)

    # --- Tokens ------------------------------------------------------------

    @staticmethod
    def _read_key(src: str, i: int) -> Tuple[Optional[str], int]:
        """Read a bare or quoted key. Returns (None, i) if there is none."""
        if src[i] == '"':
            close = _closing_quote(src, i)
            if close == -1:
                return None, i
            return _unescape(src[i + 1:close]), close + 1
        match = _IDENT_RE.match(src, i)
        if not match:
            return None, i
        return match.group(0), match.end()

    @staticmethod
    def _read_labels(src: str, i: int) -> Tuple[List[str], int]:
        """Read block labels (quoted or bare) on the current line."""
        labels: List[str] = []
        n = len(src)
        while True:
            while i < n and src[i] in " \t":
                i += 1
            if i >= n:
                break
            if src[i] == '"':
                close = _closing_quote(src, i)
                if close == -1:
                    break
                labels.append(_unescape(src[i + 1:close]))
                i = close + 1
                continue
            match = _IDENT_RE.match(src, i)
            if not match:
                break
            labels.append(match.group(0))
            i = match.end()
        return labels, i

    @staticmethod
    def _skip_blank(src: str, i: int) -> int:
        """Skip whitespace and comments."""
        n = len(src)
        while i < n:
            if src[i].isspace():
                i += 1
                continue
            if src[i] in "#/":
                end = _comment_end(src, i)
                if end != -1:
                    i = end
                    continue
            break
        return i

    @staticmethod
    def _next_line(src: str, i: int) -> int:
        newline = src.find("\n", i)
        return len(src) if newline == -1 else newline + 1

    def _warn(self, message: str) -> None:
        logger.debug(f"HCL parse warning: {message}")
        self._warnings.append(message)


# --- Convenience API -------------------------------------------------------

def parse(text: str) -> ParsedConfiguration:
    """Parse configuration text with a fresh parser."""
    return HclParser().parse(text)


def find_resources_by_type(parsed: ParsedConfiguration, *resource_types: str) -> List[HclBlock]:
    """Return resources whose type is one of resource_types, in declaration order."""
    wanted = set(resource_types)
    return [resource for resource in parsed.resources if resource.type in wanted]


def has_property(resource: HclBlock, path: str) -> bool:
    """True if a (dotted) property path exists on the resource."""
    return resource.has(path)


def get_property(resource: HclBlock, path: str, default=None):
    """Return the plain value at a dotted property path, e.g. 'root_block_device.encrypted'."""
    return resource.get(path, default)


def get_blocks(resource: HclBlock, name: str) -> List[Dict[str, Any]]:
    """Return a nested block as a list of maps, whether it appears once or many times."""
    return resource.blocks(name)
