import argparse
import dataclasses
import json
import logging
import re
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, TextIO, Tuple

from parsy import Parser, alt, eof, regex, seq
from parsy import string as strp

from .errors import (
    NAME_PATTERN,
    AssignmentUnimplemented,
    BadName,
    CircularDependency,
    DuplicateArgument,
    DuplicateDependency,
    DuplicateRecipe,
    Error,
    ErrorKind,
    ExtraLeadingWhitespace,
    InconsistentLeadingWhitespace,
    InternalError,
    MixedLeadingWhitespace,
    OuterShebang,
    UnexpectedToken,
    UnknownDependency,
    UnknownStartOfToken,
)


class DataclassDictEncoder(json.JSONEncoder):
    def default(self, o: Any) -> Any:
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        return super().default(o)


class TokenKind(Enum):
    LINE = "command"
    NAME = "name"
    COLON = '":"'
    EQUALS = '"="'
    COMMENT = "comment"
    INDENT = "indent"
    DEDENT = "dedent"
    EOL = "end of line"
    EOF = "end of file"

    @property
    def description(self) -> str:
        return self.value


@dataclass(frozen=True)
class Token:
    index: int
    line: int
    column: int
    prefix: str
    lexeme: str
    kind: TokenKind

    def error(self, text: str, kind: ErrorKind) -> Error:
        """
        Build an error that underlines this token's lexeme, skipping over the
        whitespace consumed as its prefix.
        """
        return Error(
            text=text,
            index=self.index + len(self.prefix),
            line=self.line,
            column=self.column + len(self.prefix),
            width=len(self.lexeme),
            kind=kind,
        )


@dataclass
class Recipe:
    name: str
    line_number: int
    arguments: List[str]
    dependencies: List[str]
    lines: List[str]
    shebang: bool

    def __str__(self) -> str:
        header = " ".join([self.name, *self.arguments]) + ":"
        header += "".join(f" {dependency}" for dependency in self.dependencies)
        return "\n".join([header, *(f"    {line}" for line in self.lines)])


@dataclass(frozen=True)
class Justfile:
    recipes: Dict[str, Recipe]

    def first(self) -> Optional[Recipe]:
        return next(iter(self.recipes.values()), None)

    def count(self) -> int:
        return len(self.recipes)

    def __str__(self) -> str:
        return "\n".join(str(self.recipes[name]) for name in sorted(self.recipes))


########################################################################################
# Tokenizer                                                                            #
########################################################################################


def lex(p: Parser, kind: TokenKind) -> Parser:
    return seq(HORIZONTAL_SPACE, p).combine(lambda prefix, text: (prefix, text, kind))


HORIZONTAL_SPACE = regex(r"[ \t]*")
INDENTATION = regex(r"[ \t]*(?=[^ \t\r\n])")
BODY_LINE = regex(r"[ \t]+[^ \t\r\n][^\r\n]*")
END = (HORIZONTAL_SPACE >> eof).result(True)

# Order matters: names are tried first, and a comment may never start with "#!"
TOKEN = alt(
    lex(regex(r"[a-zA-Z0-9_-]+"), TokenKind.NAME),
    lex(regex(r"\r?\n"), TokenKind.EOL),
    lex(eof.result(""), TokenKind.EOF),
    lex(strp(":"), TokenKind.COLON),
    lex(strp("="), TokenKind.EQUALS),
    lex(regex(r"#(?!!)[^\r\n]*"), TokenKind.COMMENT),
)


def attempt(p: Parser, text: str, index: int) -> Any:
    result = p(text, index)
    return result.value if result.status else None


def mixed_whitespace(whitespace: str) -> bool:
    return " " in whitespace and "\t" in whitespace


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    # Indentation of each open block, innermost last
    stack: List[str] = []
    index = 0
    line = 0
    column = 0

    def error(kind: ErrorKind, offset: int = 0) -> Error:
        return Error(
            text=text,
            index=index + offset,
            line=line,
            column=column + offset,
            width=None,
            kind=kind,
        )

    def emit(kind: TokenKind, prefix: str = "", lexeme: str = "") -> None:
        logging.debug(f"{kind.name} {prefix!r} {lexeme!r}")
        tokens.append(
            Token(
                index=index,
                line=line,
                column=column,
                prefix=prefix,
                lexeme=lexeme,
                kind=kind,
            )
        )

    while True:
        if column == 0:
            indentation = attempt(INDENTATION, text, index)
            # Blank lines never open or close a block
            if indentation is None:
                pass
            elif not stack:
                if indentation:
                    if mixed_whitespace(indentation):
                        raise error(MixedLeadingWhitespace(whitespace=indentation))
                    stack.append(indentation)
                    emit(TokenKind.INDENT)
            elif not indentation.startswith(stack[-1]):
                expected = stack[-1]
                popped = 0
                while stack and not indentation.startswith(stack[-1]):
                    stack.pop()
                    popped += 1
                if indentation != (stack[-1] if stack else ""):
                    raise error(
                        InconsistentLeadingWhitespace(
                            expected=expected, found=indentation
                        )
                    )
                for _ in range(popped):
                    emit(TokenKind.DEDENT)

        if stack and attempt(END, text, index):
            while stack:
                stack.pop()
                emit(TokenKind.DEDENT)

        body_line = attempt(BODY_LINE, text, index) if column == 0 and stack else None
        if body_line is not None:
            prefix, lexeme = stack[-1], body_line[len(stack[-1]) :]
            kind = TokenKind.LINE
        else:
            lexed: Optional[Tuple[str, str, TokenKind]] = attempt(TOKEN, text, index)
            if lexed is None:
                offset = HORIZONTAL_SPACE(text, index).index - index
                if text.startswith("#!", index + offset):
                    raise error(OuterShebang(), offset)
                raise error(UnknownStartOfToken(), offset)
            prefix, lexeme, kind = lexed

        emit(kind, prefix, lexeme)
        if kind is TokenKind.EOF:
            break

        length = len(prefix) + len(lexeme)
        if length == 0:
            message = f"zero length {kind.description} token"
            raise error(InternalError(message=message))
        if kind is TokenKind.EOL:
            line += 1
            column = 0
        else:
            column += length
        index += length

    return tokens


########################################################################################
# Parser                                                                               #
########################################################################################


NAME_RE = re.compile(NAME_PATTERN)


class JustfileParser:
    def __init__(self, text: str, tokens: List[Token]) -> None:
        self.text = text
        self.tokens = tokens
        self.position = 0
        # Kept for error positions while validating the dependency graph
        self.dependency_tokens: Dict[str, List[Token]] = dict()

    def peek(self, kind: TokenKind) -> bool:
        return self.tokens[self.position].kind is kind

    def next(self) -> Token:
        token = self.tokens[self.position]
        if self.position < len(self.tokens) - 1:
            self.position += 1
        return token

    def accept(self, kind: TokenKind) -> Optional[Token]:
        if self.peek(kind):
            return self.next()
        return None

    def accepted(self, kind: TokenKind) -> bool:
        return self.accept(kind) is not None

    def expect(self, kind: TokenKind) -> Optional[Token]:
        """
        Consume the next token, returning it only if it is not of the expected
        kind.
        """
        if self.accepted(kind):
            return None
        return self.next()

    def expect_eol(self) -> Optional[Token]:
        if self.accepted(TokenKind.EOL) or self.peek(TokenKind.EOF):
            return None
        return self.next()

    def unexpected(self, token: Token, *expected: TokenKind) -> Error:
        return token.error(
            self.text, UnexpectedToken(expected=list(expected), found=token.kind)
        )

    def name(self, token: Token) -> str:
        if not NAME_RE.fullmatch(token.lexeme):
            raise token.error(self.text, BadName(name=token.lexeme))
        return token.lexeme

    def recipe(self, name: str, line_number: int) -> Recipe:
        arguments: List[str] = []
        while self.peek(TokenKind.NAME):
            token = self.next()
            argument = self.name(token)
            if argument in arguments:
                raise token.error(
                    self.text, DuplicateArgument(recipe=name, argument=argument)
                )
            arguments.append(argument)

        unexpected = self.expect(TokenKind.COLON)
        if unexpected is not None:
            raise self.unexpected(unexpected, TokenKind.NAME, TokenKind.COLON)

        dependencies: List[str] = []
        dependency_tokens: List[Token] = []
        while self.peek(TokenKind.NAME):
            token = self.next()
            dependency = self.name(token)
            if dependency in dependencies:
                raise token.error(
                    self.text, DuplicateDependency(recipe=name, dependency=dependency)
                )
            dependencies.append(dependency)
            dependency_tokens.append(token)

        self.accept(TokenKind.COMMENT)
        unexpected = self.expect_eol()
        if unexpected is not None:
            raise self.unexpected(
                unexpected, TokenKind.NAME, TokenKind.EOL, TokenKind.EOF
            )

        lines: List[str] = []
        shebang = False
        if self.accepted(TokenKind.INDENT):
            while not self.peek(TokenKind.DEDENT):
                line = self.accept(TokenKind.LINE)
                if line is not None:
                    if not lines:
                        shebang = line.lexeme.startswith("#!")
                    elif not shebang and line.lexeme.startswith((" ", "\t")):
                        raise line.error(self.text, ExtraLeadingWhitespace())
                    lines.append(line.lexeme)
                    if not self.peek(TokenKind.DEDENT):
                        unexpected = self.expect_eol()
                        if unexpected is not None:
                            raise self.unexpected(unexpected, TokenKind.EOL)
                elif not self.accepted(TokenKind.EOL):
                    raise self.unexpected(self.next(), TokenKind.LINE, TokenKind.EOL)

            unexpected = self.expect(TokenKind.DEDENT)
            if unexpected is not None:
                raise self.unexpected(unexpected, TokenKind.DEDENT)

        self.dependency_tokens[name] = dependency_tokens
        return Recipe(
            name=name,
            line_number=line_number,
            arguments=arguments,
            dependencies=dependencies,
            lines=lines,
            shebang=shebang,
        )

    def file(self) -> Justfile:
        recipes: Dict[str, Recipe] = dict()
        while True:
            token = self.next()
            if token.kind is TokenKind.EOF:
                break
            if token.kind is TokenKind.EOL:
                continue
            if token.kind is TokenKind.COMMENT:
                unexpected = self.expect_eol()
                if unexpected is not None:
                    raise unexpected.error(
                        self.text,
                        InternalError(
                            message="found comment followed by "
                            f"{unexpected.kind.description}"
                        ),
                    )
                continue
            if token.kind is TokenKind.NAME:
                equals = self.accept(TokenKind.EQUALS)
                if equals is not None:
                    raise equals.error(self.text, AssignmentUnimplemented())
                name = self.name(token)
                if name in recipes:
                    raise token.error(
                        self.text,
                        DuplicateRecipe(recipe=name, first=recipes[name].line_number),
                    )
                recipes[name] = self.recipe(name, token.line)
                continue
            raise self.unexpected(token, TokenKind.NAME)

        self.resolve(recipes)
        return Justfile(recipes=recipes)

    def resolve(self, recipes: Dict[str, Recipe]) -> None:
        """
        Check that every dependency names a recipe, then walk the dependency
        graph depth first looking for cycles. The walk keeps its own stack of
        (recipe, remaining dependency tokens) so deep graphs do not hit the
        interpreter's recursion limit.
        """
        for recipe in recipes.values():
            for token in self.dependency_tokens[recipe.name]:
                if token.lexeme not in recipes:
                    raise token.error(
                        self.text,
                        UnknownDependency(recipe=recipe.name, unknown=token.lexeme),
                    )

        resolved: Set[str] = set()
        for recipe in recipes.values():
            if recipe.name in resolved:
                continue
            path = [recipe.name]
            stack: List[Tuple[Recipe, Iterator[Token]]] = [
                (recipe, iter(self.dependency_tokens[recipe.name]))
            ]
            while stack:
                current, pending = stack[-1]
                token = next(pending, None)
                if token is None:
                    resolved.add(current.name)
                    path.pop()
                    stack.pop()
                    continue
                dependency = token.lexeme
                if dependency in resolved:
                    continue
                if dependency in path:
                    circle = path[path.index(dependency) :] + [dependency]
                    raise token.error(
                        self.text,
                        CircularDependency(recipe=current.name, circle=circle),
                    )
                path.append(dependency)
                stack.append(
                    (recipes[dependency], iter(self.dependency_tokens[dependency]))
                )


def parse(text: str) -> Justfile:
    tokens = tokenize(text)
    logging.debug(f"Tokenized justfile into {len(tokens)} tokens")
    justfile = JustfileParser(text, tokens).file()
    logging.debug(f"Parsed {justfile.count()} recipes")
    return justfile


def dump(justfile: Justfile) -> str:
    return json.dumps(justfile, cls=DataclassDictEncoder, indent=2)


def dump_file(f: TextIO) -> None:
    print(dump(parse(f.read())))


def main(justfile_path: Optional[str], verbose: bool = False) -> None:
    if verbose:
        logging.basicConfig(format="%(levelname)s: %(message)s", level=logging.DEBUG)
    if justfile_path is None or justfile_path == "-":
        dump_file(sys.stdin)
    else:
        with open(justfile_path) as f:
            dump_file(f)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Parse a justfile")
    parser.add_argument("-i", "--infile", action="store", help="Input justfile path")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose parser output"
    )
    parsed_args = parser.parse_args()

    main(parsed_args.infile, verbose=parsed_args.verbose)
