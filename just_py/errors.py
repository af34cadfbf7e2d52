from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Union

if TYPE_CHECKING:  # pragma: no cover
    from .parse import TokenKind


NAME_PATTERN = "[a-z](-?[a-z])*"


def english_list(items: Sequence[Any], conjunction: str) -> str:
    """
    Join items the way they would be written in an English sentence, with an
    Oxford comma once there are three or more of them.
    """
    words = [str(item) for item in items]
    if len(words) <= 1:
        return "".join(words)
    if len(words) == 2:
        return f"{words[0]} {conjunction} {words[1]}"
    return f"{', '.join(words[:-1])}, {conjunction} {words[-1]}"


class Or:
    def __init__(self, items: Sequence[Any]) -> None:
        self.items = items

    def __str__(self) -> str:
        return english_list(self.items, "or")


class And:
    def __init__(self, items: Sequence[Any]) -> None:
        self.items = items

    def __str__(self) -> str:
        return english_list(self.items, "and")


def show_whitespace(whitespace: str) -> str:
    return whitespace.replace("\t", "␉").replace(" ", "␠")


########################################################################################
# Parse Errors                                                                         #
########################################################################################


@dataclass(frozen=True)
class InconsistentLeadingWhitespace:
    expected: str
    found: str


@dataclass(frozen=True)
class MixedLeadingWhitespace:
    whitespace: str


@dataclass(frozen=True)
class ExtraLeadingWhitespace:
    pass


@dataclass(frozen=True)
class OuterShebang:
    pass


@dataclass(frozen=True)
class UnknownStartOfToken:
    pass


@dataclass(frozen=True)
class AssignmentUnimplemented:
    pass


@dataclass(frozen=True)
class UnexpectedToken:
    expected: List["TokenKind"]
    found: "TokenKind"


@dataclass(frozen=True)
class BadName:
    name: str


@dataclass(frozen=True)
class DuplicateArgument:
    recipe: str
    argument: str


@dataclass(frozen=True)
class DuplicateDependency:
    recipe: str
    dependency: str


@dataclass(frozen=True)
class DuplicateRecipe:
    recipe: str
    first: int


@dataclass(frozen=True)
class UnknownDependency:
    recipe: str
    unknown: str


@dataclass(frozen=True)
class CircularDependency:
    recipe: str
    circle: List[str]


@dataclass(frozen=True)
class InternalError:
    message: str


ErrorKind = Union[
    InconsistentLeadingWhitespace,
    MixedLeadingWhitespace,
    ExtraLeadingWhitespace,
    OuterShebang,
    UnknownStartOfToken,
    AssignmentUnimplemented,
    UnexpectedToken,
    BadName,
    DuplicateArgument,
    DuplicateDependency,
    DuplicateRecipe,
    UnknownDependency,
    CircularDependency,
    InternalError,
]


def error_message(kind: ErrorKind) -> str:
    if isinstance(kind, InconsistentLeadingWhitespace):
        return (
            "recipe line has inconsistent leading whitespace: recipe started with "
            f'"{show_whitespace(kind.expected)}" but found line with '
            f'"{show_whitespace(kind.found)}"'
        )
    if isinstance(kind, MixedLeadingWhitespace):
        return (
            "found a mix of tabs and spaces in leading whitespace: "
            f'"{show_whitespace(kind.whitespace)}"\n'
            "leading whitespace may consist of tabs or spaces, but not both"
        )
    if isinstance(kind, ExtraLeadingWhitespace):
        return "recipe line has extra leading whitespace"
    if isinstance(kind, OuterShebang):
        return 'a shebang "#!" is reserved syntax outside of recipes'
    if isinstance(kind, UnknownStartOfToken):
        return "unknown start of token"
    if isinstance(kind, AssignmentUnimplemented):
        return "variable assignment is not yet implemented"
    if isinstance(kind, UnexpectedToken):
        expected = Or([expected.description for expected in kind.expected])
        return f"expected {expected} but found {kind.found.description}"
    if isinstance(kind, BadName):
        return f'name "{kind.name}" did not match /{NAME_PATTERN}/'
    if isinstance(kind, DuplicateArgument):
        return f'recipe "{kind.recipe}" has duplicate argument "{kind.argument}"'
    if isinstance(kind, DuplicateDependency):
        return f'recipe "{kind.recipe}" has duplicate dependency "{kind.dependency}"'
    if isinstance(kind, DuplicateRecipe):
        return (
            f'recipe "{kind.recipe}" is already defined on line {kind.first + 1}'
        )
    if isinstance(kind, UnknownDependency):
        return f'recipe "{kind.recipe}" has unknown dependency "{kind.unknown}"'
    if isinstance(kind, CircularDependency):
        return (
            f'recipe "{kind.recipe}" has circular dependency '
            f'"{" -> ".join(kind.circle)}"'
        )
    if isinstance(kind, InternalError):
        return f"internal error, this may indicate a bug in just.py: {kind.message}"
    raise ValueError(f"Unexpected error kind {kind!r}.")


@dataclass
class Error(Exception):
    """
    A tokenize or parse failure, pinned to a position in the justfile text.

    `index` and `column` count characters of `text`, not bytes; `byte_index`
    gives the UTF-8 offset. A `width` of None points at a single character.
    Otherwise the error underlines `width` characters starting at `index`.
    """

    text: str
    index: int
    line: int
    column: int
    width: Optional[int]
    kind: ErrorKind

    @property
    def byte_index(self) -> int:
        return len(self.text[: self.index].encode("utf-8"))

    def source_line(self) -> Optional[str]:
        lines = self.text.split("\n")
        if self.line >= len(lines):
            return None
        return lines[self.line].rstrip("\r")

    def __str__(self) -> str:
        rendered = [
            f"error: {error_message(self.kind)}",
            f"  --> justfile:{self.line + 1}:{self.column + 1}",
        ]
        source = self.source_line()
        if source is not None:
            # Keep tabs so the caret lines up with the source as displayed
            padding = "".join(c if c == "\t" else " " for c in source[: self.column])
            rendered.append(f"   | {source}")
            rendered.append(f"   | {padding}{'^' * max(self.width or 1, 1)}")
        return "\n".join(rendered)


########################################################################################
# Run Errors                                                                           #
########################################################################################


@dataclass(frozen=True)
class UnknownRecipes:
    recipes: List[str]


@dataclass(frozen=True)
class Code:
    recipe: str
    code: int


@dataclass(frozen=True)
class Signal:
    recipe: str
    signal: int


@dataclass(frozen=True)
class IoError:
    recipe: str
    error: OSError


@dataclass(frozen=True)
class TmpdirIoError:
    recipe: str
    error: OSError


RunErrorKind = Union[UnknownRecipes, Code, Signal, IoError, TmpdirIoError]


def run_error_message(kind: RunErrorKind) -> str:
    if isinstance(kind, UnknownRecipes):
        noun = "recipe" if len(kind.recipes) == 1 else "recipes"
        return f"Justfile does not contain {noun} {And(kind.recipes)}"
    if isinstance(kind, Code):
        return f'Recipe "{kind.recipe}" failed with exit code {kind.code}'
    if isinstance(kind, Signal):
        return f'Recipe "{kind.recipe}" was terminated by signal {kind.signal}'
    if isinstance(kind, IoError):
        return (
            f'Recipe "{kind.recipe}" could not be run because of an I/O error: '
            f"{kind.error}"
        )
    if isinstance(kind, TmpdirIoError):
        return (
            f'Recipe "{kind.recipe}" could not be run because of an I/O error while '
            f"writing its script to a temporary directory: {kind.error}"
        )
    raise ValueError(f"Unexpected run error kind {kind!r}.")


@dataclass
class RunError(Exception):
    kind: RunErrorKind

    def __str__(self) -> str:
        return f"error: {run_error_message(self.kind)}"
