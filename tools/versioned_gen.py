#!/usr/bin/env python3
"""versioned record/union generator.

Input:  Python source containing versioned ``record``/``union`` item blocks.
Output: transformed Python source with one dataclass per declared version
        replacing each item block, and ``versioned[Name, N]`` references
        rewritten to the concrete per-version class names.
"""

from __future__ import annotations

import argparse
import dataclasses
import hashlib
import pathlib
import re
import sys
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple, Union

GENERATOR_VERSION = "0.1.0"
FORMAT_VERSION = "1"
NAMESPACE = "versioned"
VERSION_MAX = 0xFFFFFFFF
DIGEST_PATTERN = re.compile(r"^# digest: ([0-9a-f]{64})$", re.MULTILINE)
IDENTIFIER = re.compile(r"[A-Za-z_]\w*")
DOTTED_NAME = re.compile(r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*")
INT_LITERAL = re.compile(r"[0-9](?:_?[0-9])*")
RANGE_PATTERN = re.compile(r"^(?P<start>.*?)(?P<limits>\.\.=?)(?P<end>.*)$", re.DOTALL)
ITEM_HEAD = re.compile(r"(?:private\s+)?(?:record|union)\s+[A-Za-z_]\w*\s*\{")
REFERENCE_PATTERN = re.compile(r"(?<![\w.])" + NAMESPACE + r"\[\s*([A-Za-z_]\w*)\s*,\s*([0-9]+)\s*\]")
ITEM_KEYWORDS = ("record", "union")
BRACKETS = {"(": ")", "[": "]", "{": "}"}


class GeneratorError(RuntimeError):
    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


class ParseError(GeneratorError):
    """The item skeleton or a directive does not parse structurally."""


class MalformedRange(GeneratorError):
    pass


class UnrecognizedDirective(GeneratorError):
    pass


class DuplicateVersion(GeneratorError):
    pass


class EmptyVersionList(GeneratorError):
    pass


class UnresolvedInheritedVersion(GeneratorError):
    pass


class DuplicateMember(GeneratorError):
    pass


class UnresolvedReference(GeneratorError):
    pass


@dataclasses.dataclass(frozen=True)
class Options:
    serde: bool = False


@dataclasses.dataclass(frozen=True)
class VersionRange:
    """Half-open interval ``[start, end)`` of version numbers."""

    start: int
    end: int

    @classmethod
    def between(cls, start: int, end: int) -> "VersionRange":
        # a reversed range is empty, anchored at its start
        return cls(start, max(start, end))

    def __contains__(self, version: int) -> bool:
        return self.start <= version < self.end

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def intersect(self, other: "VersionRange") -> "VersionRange":
        return VersionRange.between(max(self.start, other.start), min(self.end, other.end))


ALWAYS = VersionRange(0, VERSION_MAX)


@dataclasses.dataclass(frozen=True)
class Validity:
    """When a member is active.

    ``window`` is the intersection of every range-form ``cfg``; ``pins`` are the
    bare-integer ``cfg`` values, any one of which admits a version.
    """

    window: VersionRange = ALWAYS
    pins: Tuple[VersionRange, ...] = ()

    def active_at(self, version: int) -> bool:
        if version not in self.window:
            return False
        return not self.pins or any(version in pin for pin in self.pins)


@dataclasses.dataclass(frozen=True)
class VersionDirective:
    version: int
    index: int
    keyword = "version"


@dataclasses.dataclass(frozen=True)
class CfgDirective:
    range: VersionRange
    pinned: bool
    index: int
    keyword = "cfg"


@dataclasses.dataclass(frozen=True)
class InheritDirective:
    index: int
    keyword = "inherit"


@dataclasses.dataclass(frozen=True)
class DeriveDirective:
    payload: str
    index: int
    keyword = "derive"


@dataclasses.dataclass(frozen=True)
class SerdeDirective:
    payload: str
    index: int
    keyword = "serde"


@dataclasses.dataclass(frozen=True)
class PlainAttribute:
    text: str
    index: int


Directive = Union[
    VersionDirective, CfgDirective, InheritDirective, DeriveDirective, SerdeDirective, PlainAttribute
]


@dataclasses.dataclass(frozen=True)
class MemberAttributes:
    validity: Validity = Validity()
    inherit: bool = False
    attributes: Tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class ItemAttributes:
    versions: Tuple[VersionDirective, ...] = ()
    derive: Tuple[str, ...] = ()
    serde: Tuple[str, ...] = ()
    attributes: Tuple[str, ...] = ()


def compose_validity(cfgs: Iterable[CfgDirective]) -> Validity:
    window = ALWAYS
    pins: List[VersionRange] = []
    for cfg in cfgs:
        if cfg.pinned:
            pins.append(cfg.range)
        else:
            window = window.intersect(cfg.range)
    return Validity(window=window, pins=tuple(pins))


@dataclasses.dataclass(frozen=True)
class VersionedAttributes:
    attrs: Tuple[Directive, ...] = ()

    def of_kind(self, kind: type) -> tuple:
        return tuple(attr for attr in self.attrs if isinstance(attr, kind))

    def reject(self, kinds: Tuple[type, ...], level: str) -> None:
        for attr in self.attrs:
            if isinstance(attr, kinds):
                raise UnrecognizedDirective(f"`{attr.keyword}` is not valid on a {level}", attr.index)

    def item_attributes(self) -> ItemAttributes:
        self.reject((CfgDirective, InheritDirective), "item")
        return ItemAttributes(
            versions=self.of_kind(VersionDirective),
            derive=tuple(d.payload for d in self.of_kind(DeriveDirective)),
            serde=tuple(d.payload for d in self.of_kind(SerdeDirective)),
            attributes=tuple(a.text for a in self.of_kind(PlainAttribute)),
        )

    def member_attributes(self, level: str = "member") -> MemberAttributes:
        misplaced: Tuple[type, ...] = (VersionDirective, DeriveDirective, SerdeDirective)
        if level == "variant":
            misplaced += (InheritDirective,)
        self.reject(misplaced, level)
        return MemberAttributes(
            validity=compose_validity(self.of_kind(CfgDirective)),
            inherit=bool(self.of_kind(InheritDirective)),
            attributes=tuple(a.text for a in self.of_kind(PlainAttribute)),
        )


@dataclasses.dataclass(frozen=True)
class Member:
    name: "str | None"  # None for tuple-like positions
    type_name: str
    attrs: MemberAttributes
    index: int


@dataclasses.dataclass(frozen=True)
class Variant:
    name: str
    shape: str  # unit | tuple | struct
    members: Tuple[Member, ...]
    attrs: MemberAttributes
    index: int


@dataclasses.dataclass(frozen=True)
class Template:
    kind: str  # record | union
    name: str
    visibility: str  # public | private
    attrs: ItemAttributes
    members: Tuple[Member, ...] = ()
    variants: Tuple[Variant, ...] = ()
    start: int = 0
    end: int = 0


@dataclasses.dataclass(frozen=True)
class ResolvedMember:
    member: Member
    inherited: "Tuple[str, int] | None" = None


@dataclasses.dataclass(frozen=True)
class ResolvedVariant:
    variant: Variant
    members: Tuple[ResolvedMember, ...]


@dataclasses.dataclass(frozen=True)
class ResolvedVersion:
    template: Template
    version: int
    members: Tuple[ResolvedMember, ...] = ()
    variants: Tuple[ResolvedVariant, ...] = ()


def line_col(text: str, index: int) -> Tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    line_start = text.rfind("\n", 0, index)
    if line_start < 0:
        line_start = -1
    col = index - line_start
    return line, col


def fail(path: pathlib.Path, text: str, error: GeneratorError) -> None:
    line, col = line_col(text, error.index)
    print(f"{path}:{line}:{col}: error: {error}", file=sys.stderr)


def iter_chars(text: str, i: int = 0) -> Iterator[Tuple[int, str]]:
    """Yield ``(index, mode)`` for each character, mode being code, comment or string.

    Quote characters belong to the string they delimit.
    """
    n = len(text)
    quote = ""
    string_start = 0
    escape = False
    in_comment = False

    while i < n:
        ch = text[i]
        if in_comment:
            if ch == "\n":
                in_comment = False
                continue
            yield i, "comment"
            i += 1
            continue

        if quote:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif text.startswith(quote, i):
                for j in range(i, i + len(quote)):
                    yield j, "string"
                i += len(quote)
                quote = ""
                continue
            elif ch == "\n" and len(quote) == 1:
                raise ParseError("unterminated string literal", string_start)
            yield i, "string"
            i += 1
            continue

        if ch == "#":
            in_comment = True
            continue
        if ch in "\"'":
            quote = ch * 3 if text.startswith(ch * 3, i) else ch
            string_start = i
            for j in range(i, i + len(quote)):
                yield j, "string"
            i += len(quote)
            continue

        yield i, "code"
        i += 1

    if quote:
        raise ParseError("unterminated string literal", string_start)


def skip_ws_comments(text: str, i: int) -> int:
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch == "#":
            j = text.find("\n", i + 1)
            if j == -1:
                return n
            i = j + 1
            continue
        return i
    return i


def parse_identifier(text: str, i: int) -> Tuple[str, int]:
    m = IDENTIFIER.match(text, i)
    if not m:
        raise ParseError("expected identifier", i)
    return m.group(0), m.end()


def match_keyword(text: str, i: int, keyword: str) -> bool:
    end = i + len(keyword)
    if not text.startswith(keyword, i):
        return False
    return end >= len(text) or not (text[end].isalnum() or text[end] == "_")


def find_matching(text: str, open_index: int) -> int:
    if open_index >= len(text) or text[open_index] not in BRACKETS:
        raise ParseError("internal error: expected opening bracket", open_index)

    expected: List[str] = []
    for i, mode in iter_chars(text, open_index):
        if mode != "code":
            continue
        ch = text[i]
        if ch in BRACKETS:
            expected.append(BRACKETS[ch])
        elif ch in ")]}":
            if ch != expected[-1]:
                raise ParseError(f"mismatched '{ch}', expected '{expected[-1]}'", i)
            expected.pop()
            if not expected:
                return i

    raise ParseError("unbalanced brackets", open_index)


def scan_until_separator(text: str, i: int) -> int:
    """Index of the next top-level ',', newline or unmatched closing bracket."""
    depth = 0
    for j, mode in iter_chars(text, i):
        if mode != "code":
            continue
        ch = text[j]
        if ch in BRACKETS:
            depth += 1
        elif ch in ")]}":
            if depth == 0:
                return j
            depth -= 1
        elif ch in ",\n" and depth == 0:
            return j
    return len(text)


def normalize_type(text: str, start: int, end: int) -> str:
    kept = "".join(text[i] for i, mode in iter_chars(text[:end], start) if mode != "comment")
    return " ".join(kept.split())


def parse_int_literal(token: str, index: int, what: str) -> int:
    if not INT_LITERAL.fullmatch(token):
        raise MalformedRange(f"expected integer literal for {what}", index)
    value = int(token.replace("_", ""))
    if value > VERSION_MAX:
        raise MalformedRange(f"integer literal out of range for {what}", index)
    return value


def parse_range_expr(expr: str, index: int) -> VersionRange:
    """Parse ``N``, ``A..B``, ``A..=B`` or a range with omitted bounds."""
    stripped = expr.strip()
    match = RANGE_PATTERN.match(stripped)
    if match is None:
        if not INT_LITERAL.fullmatch(stripped):
            raise MalformedRange("expected a range or an int literal", index)
        start = parse_int_literal(stripped, index, "version")
        return VersionRange(start, start + 1)

    start_text = match.group("start").strip()
    end_text = match.group("end").strip()
    closed = match.group("limits") == "..="

    start = parse_int_literal(start_text, index, "range start") if start_text else 0
    if end_text:
        end = parse_int_literal(end_text, index, "range end")
        if closed:
            end += 1
    elif closed:
        raise MalformedRange("inclusive range requires an end bound", index)
    else:
        end = VERSION_MAX
    return VersionRange.between(start, end)


def parse_directive(text: str, start: int, end: int, options: Options) -> Directive:
    """Parse the single directive inside ``@versioned(...)``; ``end`` is its ')'."""
    i = skip_ws_comments(text, start)
    name_index = i
    name, i = parse_identifier(text, i)

    payload = None
    payload_index = i
    i = skip_ws_comments(text, i)
    if i < end and text[i] == "(":
        close = find_matching(text, i)
        payload_index = i + 1
        payload = text[i + 1 : close]
        i = skip_ws_comments(text, close + 1)
    if i < end:
        raise ParseError(f"unexpected tokens after `{name}` directive", i)

    if name == "version":
        if payload is None:
            raise ParseError("expected `version(N)`", name_index)
        token = payload.strip()
        if not INT_LITERAL.fullmatch(token):
            raise ParseError("expected integer literal in `version(...)`", payload_index)
        version = int(token.replace("_", ""))
        if version == 0:
            raise ParseError("version numbers must be positive", payload_index)
        if version >= VERSION_MAX:
            raise ParseError(f"version number {version} is out of range", payload_index)
        return VersionDirective(version=version, index=name_index)

    if name == "cfg":
        if payload is None:
            raise ParseError("expected `cfg(<range>)`", name_index)
        return CfgDirective(
            range=parse_range_expr(payload, payload_index),
            pinned=".." not in payload,
            index=name_index,
        )

    if name == "inherit":
        if payload is not None:
            raise ParseError("`inherit` takes no arguments", payload_index)
        return InheritDirective(index=name_index)

    if name == "derive" or (name == "serde" and options.serde):
        if payload is None:
            raise ParseError(f"expected `{name}(...)`", name_index)
        directive = DeriveDirective if name == "derive" else SerdeDirective
        return directive(payload=payload.strip(), index=name_index)

    raise UnrecognizedDirective(f"unrecognised `{NAMESPACE}` directive '{name}'", name_index)


def parse_attribute(text: str, i: int, options: Options) -> Tuple[Directive, int]:
    start = i
    i = skip_ws_comments(text, i + 1)
    m = DOTTED_NAME.match(text, i)
    if not m:
        raise ParseError("expected attribute name after '@'", i)
    name = m.group(0)
    i = m.end()

    if i < len(text) and text[i] == "(":
        close = find_matching(text, i)
        if name == NAMESPACE:
            return parse_directive(text, i + 1, close, options), close + 1
        i = close + 1
    elif name == NAMESPACE:
        raise ParseError(f"expected '(' after @{NAMESPACE}", i)

    return PlainAttribute(text=text[start:i], index=start), i


def parse_attributes(text: str, i: int, options: Options) -> Tuple[VersionedAttributes, int]:
    attrs: List[Directive] = []
    i = skip_ws_comments(text, i)
    while i < len(text) and text[i] == "@":
        attr, i = parse_attribute(text, i, options)
        attrs.append(attr)
        i = skip_ws_comments(text, i)
    return VersionedAttributes(tuple(attrs)), i


def parse_type(text: str, i: int) -> Tuple[str, int]:
    i = skip_ws_comments(text, i)
    stop = scan_until_separator(text, i)
    type_name = normalize_type(text, i, stop)
    if not type_name:
        raise ParseError("expected type", i)
    return type_name, stop


def expect_separator(text: str, i: int, end: int, what: str) -> int:
    i = skip_ws_comments(text, i)
    if i >= end:
        return end
    if text[i] != ",":
        raise ParseError(f"expected ',' between {what}", i)
    return skip_ws_comments(text, i + 1)


def parse_members(text: str, i: int, end: int, options: Options) -> Tuple[Member, ...]:
    members: List[Member] = []
    i = skip_ws_comments(text, i)
    while i < end:
        attrs, i = parse_attributes(text, i, options)
        index = i
        name, i = parse_identifier(text, i)
        i = skip_ws_comments(text, i)
        if i >= end or text[i] != ":":
            raise ParseError(f"expected ':' after member '{name}'", i)
        type_name, i = parse_type(text, i + 1)
        members.append(Member(name=name, type_name=type_name, attrs=attrs.member_attributes(), index=index))
        i = expect_separator(text, i, end, "members")
    return tuple(members)


def parse_tuple_members(text: str, i: int, end: int, options: Options) -> Tuple[Member, ...]:
    members: List[Member] = []
    i = skip_ws_comments(text, i)
    while i < end:
        attrs, i = parse_attributes(text, i, options)
        index = i
        type_name, i = parse_type(text, i)
        members.append(Member(name=None, type_name=type_name, attrs=attrs.member_attributes(), index=index))
        i = expect_separator(text, i, end, "tuple members")
    return tuple(members)


def parse_variants(text: str, i: int, end: int, options: Options) -> Tuple[Variant, ...]:
    variants: List[Variant] = []
    i = skip_ws_comments(text, i)
    while i < end:
        attrs, i = parse_attributes(text, i, options)
        index = i
        name, i = parse_identifier(text, i)
        i = skip_ws_comments(text, i)

        shape = "unit"
        members: Tuple[Member, ...] = ()
        if i < end and text[i] == "(":
            close = find_matching(text, i)
            shape = "tuple"
            members = parse_tuple_members(text, i + 1, close, options)
            i = close + 1
        elif i < end and text[i] == "{":
            close = find_matching(text, i)
            shape = "struct"
            members = parse_members(text, i + 1, close, options)
            i = close + 1

        variants.append(
            Variant(name=name, shape=shape, members=members, attrs=attrs.member_attributes("variant"), index=index)
        )
        i = expect_separator(text, i, end, "variants")
    return tuple(variants)


def parse_item(text: str, start: int, options: Options) -> Template:
    attrs, i = parse_attributes(text, start, options)

    visibility = "public"
    if match_keyword(text, i, "private"):
        visibility = "private"
        i = skip_ws_comments(text, i + len("private"))

    kind = next((k for k in ITEM_KEYWORDS if match_keyword(text, i, k)), None)
    if kind is None:
        raise ParseError(f"expected 'record' or 'union' after @{NAMESPACE} attributes", i)

    i = skip_ws_comments(text, i + len(kind))
    name, i = parse_identifier(text, i)
    i = skip_ws_comments(text, i)
    if i >= len(text) or text[i] != "{":
        raise ParseError(f"expected '{{' to open {kind} body", i)

    close = find_matching(text, i)
    item_attrs = attrs.item_attributes()
    if kind == "record":
        return Template(
            kind=kind,
            name=name,
            visibility=visibility,
            attrs=item_attrs,
            members=parse_members(text, i + 1, close, options),
            start=start,
            end=close + 1,
        )
    return Template(
        kind=kind,
        name=name,
        visibility=visibility,
        attrs=item_attrs,
        variants=parse_variants(text, i + 1, close, options),
        start=start,
        end=close + 1,
    )


def is_item_start(text: str, i: int) -> bool:
    """Whether a column-0 decorator run or keyword line opens a versioned item."""
    while i < len(text) and text[i] == "@":
        m = DOTTED_NAME.match(text, skip_ws_comments(text, i + 1))
        if not m:
            return False
        if m.group(0) == NAMESPACE:
            return True
        i = m.end()
        if i < len(text) and text[i] == "(":
            i = find_matching(text, i) + 1
        i = skip_ws_comments(text, i)
    return ITEM_HEAD.match(text, i) is not None


def find_item_positions(text: str) -> List[int]:
    positions: List[int] = []
    for i, mode in iter_chars(text):
        if mode != "code" or (i > 0 and text[i - 1] != "\n"):
            continue
        if text[i] == "@" or any(match_keyword(text, i, kw) for kw in ("private",) + ITEM_KEYWORDS):
            positions.append(i)
    return positions


def parse_all_items(text: str, options: Options = Options()) -> List[Template]:
    items: List[Template] = []
    names: set[str] = set()
    consumed_until = -1

    for pos in find_item_positions(text):
        if pos < consumed_until or not is_item_start(text, pos):
            continue
        item = parse_item(text, pos, options)
        if item.name in names:
            raise ParseError(f"duplicate versioned item '{item.name}'", pos)
        names.add(item.name)
        items.append(item)
        consumed_until = item.end

    return items


class VersionResolver:
    """Materializes the active member set of one template at each declared version."""

    def __init__(self, template: Template, registry: "Registry") -> None:
        self.template = template
        self.registry = registry
        self._resolved: "Dict[int, ResolvedVersion] | None" = None

    def declares(self, version: int) -> bool:
        return any(d.version == version for d in self.template.attrs.versions)

    def version_list(self) -> Tuple[int, ...]:
        directives = self.template.attrs.versions
        if not directives:
            raise EmptyVersionList(
                f"'{self.template.name}' declares no versions; add @{NAMESPACE}(version(N))",
                self.template.start,
            )
        seen: set[int] = set()
        for directive in directives:
            if directive.version in seen:
                raise DuplicateVersion(
                    f"version {directive.version} declared more than once on '{self.template.name}'",
                    directive.index,
                )
            seen.add(directive.version)
        return tuple(d.version for d in directives)

    def resolve(self) -> Dict[int, ResolvedVersion]:
        if self._resolved is None:
            self._resolved = {v: self.resolve_version(v) for v in self.version_list()}
        return dict(self._resolved)

    def resolve_version(self, version: int) -> ResolvedVersion:
        if self.template.kind == "record":
            return ResolvedVersion(
                template=self.template,
                version=version,
                members=self.resolve_members(self.template.members, version),
            )

        variants: List[ResolvedVariant] = []
        seen: set[str] = set()
        for variant in self.template.variants:
            if not variant.attrs.validity.active_at(version):
                continue
            if variant.name in seen:
                raise DuplicateMember(f"variant '{variant.name}' is active twice at version {version}", variant.index)
            seen.add(variant.name)
            variants.append(ResolvedVariant(variant=variant, members=self.resolve_members(variant.members, version)))
        return ResolvedVersion(template=self.template, version=version, variants=tuple(variants))

    def resolve_members(self, members: Sequence[Member], version: int) -> Tuple[ResolvedMember, ...]:
        resolved: List[ResolvedMember] = []
        seen: set[str] = set()
        for member in members:
            if not member.attrs.validity.active_at(version):
                continue
            if member.name is not None:
                if member.name in seen:
                    raise DuplicateMember(f"member '{member.name}' is active twice at version {version}", member.index)
                seen.add(member.name)
            inherited = self.registry.inherit(member, version) if member.attrs.inherit else None
            resolved.append(ResolvedMember(member=member, inherited=inherited))
        return tuple(resolved)


class Registry:
    """All templates of one source, looked up by name."""

    def __init__(self, templates: Iterable[Template]) -> None:
        self._resolvers: Dict[str, VersionResolver] = {}
        for template in templates:
            if template.name in self._resolvers:
                raise ParseError(f"duplicate versioned item '{template.name}'", template.start)
            self._resolvers[template.name] = VersionResolver(template, self)

    def __getitem__(self, name: str) -> VersionResolver:
        return self._resolvers[name]

    def __contains__(self, name: str) -> bool:
        return name in self._resolvers

    def __iter__(self) -> Iterator[VersionResolver]:
        return iter(self._resolvers.values())

    def inherit(self, member: Member, version: int) -> Tuple[str, int]:
        if not IDENTIFIER.fullmatch(member.type_name):
            raise UnresolvedInheritedVersion(
                f"inherited member type '{member.type_name}' must name a versioned item", member.index
            )
        resolver = self._resolvers.get(member.type_name)
        if resolver is None:
            raise UnresolvedInheritedVersion(
                f"inherited type '{member.type_name}' is not a versioned item", member.index
            )
        if not resolver.declares(version):
            raise UnresolvedInheritedVersion(
                f"inherited type '{member.type_name}' has no version {version}", member.index
            )
        return member.type_name, version


def concrete_name(template: Template, version: int) -> str:
    prefix = "_" if template.visibility == "private" else ""
    return f"{prefix}{template.name}_v{version}"


class ReferenceTable:
    """``(base name, version) -> concrete class name`` lookups and rewrites."""

    def __init__(self, names: Dict[Tuple[str, int], str]) -> None:
        self.names = dict(names)

    @classmethod
    def from_registry(cls, registry: Registry) -> "ReferenceTable":
        names: Dict[Tuple[str, int], str] = {}
        for resolver in registry:
            template = resolver.template
            for directive in template.attrs.versions:
                names[(template.name, directive.version)] = concrete_name(template, directive.version)
        return cls(names)

    def lookup(self, name: str, version: int, index: int) -> str:
        try:
            return self.names[(name, version)]
        except KeyError:
            raise UnresolvedReference(f"no versioned item '{name}' at version {version}", index) from None

    def rewrite(self, text: str, offset: int = 0) -> str:
        code = {i for i, mode in iter_chars(text) if mode == "code"}
        pieces: List[str] = []
        cursor = 0
        for m in REFERENCE_PATTERN.finditer(text):
            if m.start() not in code:
                continue
            pieces.append(text[cursor : m.start()])
            pieces.append(self.lookup(m.group(1), int(m.group(2)), offset + m.start()))
            cursor = m.end()
        pieces.append(text[cursor:])
        return "".join(pieces)


def dataclass_decorators(attrs: ItemAttributes) -> List[str]:
    lines = [f"@serde({payload})" for payload in attrs.serde]
    if attrs.derive:
        lines.append(f"@dataclasses.dataclass({', '.join(attrs.derive)})")
    else:
        lines.append("@dataclasses.dataclass")
    return lines


def member_type(member: ResolvedMember, table: ReferenceTable) -> str:
    # concrete names are quoted: the referenced item may be emitted later in the module
    if member.inherited is not None:
        name, version = member.inherited
        return repr(table.lookup(name, version, member.member.index))
    type_name = member.member.type_name
    rewritten = table.rewrite(type_name, member.member.index)
    return repr(rewritten) if rewritten != type_name else type_name


def render_field(name: str, member: ResolvedMember, table: ReferenceTable) -> str:
    annotation = member_type(member, table)
    attributes = member.member.attrs.attributes
    if not attributes:
        return f"{name}: {annotation}"
    metadata = ", ".join(repr(a) for a in attributes)
    return f'{name}: {annotation} = dataclasses.field(metadata={{"attributes": ({metadata},)}})'


def render_record_version(resolved: ResolvedVersion, table: ReferenceTable) -> List[str]:
    template = resolved.template
    class_name = table.lookup(template.name, resolved.version, template.start)

    lines = [table.rewrite(attr, template.start) for attr in template.attrs.attributes]
    lines.extend(dataclass_decorators(template.attrs))
    lines.append(f"class {class_name}:")
    lines.append(f'    """Record ``{template.name}`` at version {resolved.version}."""')
    lines.append("")
    lines.append(f"    VERSION: typing.ClassVar[int] = {resolved.version}")
    if resolved.members:
        lines.append("")
    for member in resolved.members:
        lines.append(f"    {render_field(member.member.name, member, table)}")
    return lines


def render_union_version(resolved: ResolvedVersion, table: ReferenceTable) -> List[str]:
    template = resolved.template
    base = table.lookup(template.name, resolved.version, template.start)

    lines = [table.rewrite(attr, template.start) for attr in template.attrs.attributes]
    lines.append(f"class {base}:")
    lines.append(f'    """Tagged union ``{template.name}`` at version {resolved.version}."""')
    lines.append("")
    lines.append(f"    VERSION: typing.ClassVar[int] = {resolved.version}")

    for alt in resolved.variants:
        lines.append("")
        lines.append("")
        lines.extend(table.rewrite(attr, alt.variant.index) for attr in alt.variant.attrs.attributes)
        lines.extend(dataclass_decorators(template.attrs))
        lines.append(f"class {base}_{alt.variant.name}({base}):")
        if not alt.members:
            lines.append("    pass")
        for position, member in enumerate(alt.members):
            # tuple-like positions are renumbered over the active members
            name = member.member.name if alt.variant.shape == "struct" else f"_{position}"
            lines.append(f"    {render_field(name, member, table)}")

    if resolved.variants:
        lines.append("")
        lines.append("")
    for alt in resolved.variants:
        lines.append(f"{base}.{alt.variant.name} = {base}_{alt.variant.name}")
    return lines


def render_item(resolver: VersionResolver, table: ReferenceTable) -> str:
    template = resolver.template
    versions = resolver.version_list()
    resolved = resolver.resolve()

    blocks: List[str] = []
    for version in versions:
        if template.kind == "union":
            blocks.append("\n".join(render_union_version(resolved[version], table)))
        else:
            blocks.append("\n".join(render_record_version(resolved[version], table)))

    prefix = "_" if template.visibility == "private" else ""
    concrete = [table.lookup(template.name, v, template.start) for v in versions]
    blocks.append(
        f"{prefix}{template.name} = {concrete[-1]}\n"
        f"{prefix}Versioned{template.name} = typing.Union[{', '.join(concrete)}]"
    )
    return "\n\n\n".join(blocks)


def apply_substitutions(source: str, registry: Registry, table: ReferenceTable) -> str:
    pieces: List[str] = []
    cursor = 0
    missing_imports = [
        f"import {module}\n"
        for module in ("dataclasses", "typing")
        if not re.search(rf"^import {module}\s*$", source, re.MULTILINE)
    ]
    injected_imports = False

    for resolver in registry:
        template = resolver.template
        pieces.append(table.rewrite(source[cursor : template.start], cursor))
        replacement = render_item(resolver, table)
        if missing_imports and not injected_imports:
            replacement = "".join(missing_imports) + "\n\n" + replacement
            injected_imports = True
        pieces.append(replacement)
        cursor = template.end

    pieces.append(table.rewrite(source[cursor:], cursor))
    return "".join(pieces)


def compute_file_digest(source_bytes: bytes, options: Options) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(f"serde={int(options.serde)}".encode("utf-8"))
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def render_file(source_path: pathlib.Path, source_text: str, source_bytes: bytes, options: Options) -> str:
    registry = Registry(parse_all_items(source_text, options))
    table = ReferenceTable.from_registry(registry)
    transformed = apply_substitutions(source_text, registry, table)
    digest = compute_file_digest(source_bytes, options)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "# versioned-generated\n"
        f"# source: {source_label}\n"
        f"# generator_version: {GENERATOR_VERSION}\n"
        f"# format_version: {FORMAT_VERSION}\n"
        f"# digest: {digest}\n\n"
    )
    return meta + transformed


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)
    options = Options(serde=args.serde)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    source_text = source_bytes.decode("utf-8")

    try:
        rendered = render_file(in_path, source_text, source_bytes, options)
    except GeneratorError as e:
        fail(in_path, source_text, e)
        return 1

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return 0

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if old_digest and new_digest and old_digest == new_digest:
            print(f"unchanged: {out_path}")
            return 0
        if existing == rendered:
            print(f"unchanged: {out_path}")
            return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate per-version dataclasses from .py.versioned sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .py.versioned file")
    parser.add_argument("--out", dest="output", required=True, help="Output generated module")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    parser.add_argument("--serde", action="store_true", help="Accept serde(...) directives")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
