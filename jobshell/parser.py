import shlex
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from jobshell.config import SHELL_NAME
from jobshell.errors import ParseError

QUOTES = "'\""


@dataclass
class Token:
    text: str
    quoted: bool = False
    raw: str = ""

    def is_unquoted(self, text):
        return not self.quoted and self.text == text

    def is_operator(self):
        """Unquoted |, or a token starting a redirect (< > <path >path)."""
        if self.quoted or not self.text:
            return False
        return self.text == "|" or self.text[0] in "<>"


@dataclass
class Command:
    """One pipeline stage: argv plus redirects, consumed once by the launcher."""
    args: List[str] = field(default_factory=list)
    input_path: Optional[str] = None
    output_path: Optional[str] = None
    background: bool = False
    words: List[str] = field(default_factory=list)

    @property
    def text(self):
        return " ".join(self.words)


def tokenize(line):
    """
    Split a line into tokens.
    A token starting with ' or " runs to the matching quote and is stripped;
    quotes inside an unquoted token are ordinary characters.
    """
    # posix=False keeps quote characters in place and does no escape processing
    lex = shlex.shlex(line, posix=False)
    lex.whitespace_split = True
    lex.commenters = ""
    try:
        words = list(lex)
    except ValueError as e:
        raise ParseError(f"syntax error: {str(e).lower()}") from e

    tokens = []
    for word in words:
        if len(word) >= 2 and word[0] in QUOTES and word[-1] == word[0]:
            tokens.append(Token(word[1:-1], quoted=True, raw=word))
        else:
            tokens.append(Token(word, raw=word))
    return tokens


def _redirect_target(tokens, i):
    """
    Resolve the redirect at tokens[i].
    Returns: (operator, target, raw_text, next_index)
    """
    tok = tokens[i]
    op, target = tok.text[0], tok.text[1:]
    if target:
        if target[0] in "<>":
            raise ParseError(f"syntax error near unexpected token `{target[0]}'")
        return op, target, tok.raw, i + 1

    if i + 1 >= len(tokens):
        raise ParseError("syntax error near unexpected token `newline'")
    nxt = tokens[i + 1]
    if nxt.is_operator():
        raise ParseError(f"syntax error near unexpected token `{nxt.text}'")
    return op, nxt.text, f"{op} {nxt.raw}", i + 2


def parse_line(line):
    """
    Parse a line into pipeline stages.
    Returns: list of Command (empty for a blank line)
    Raises: ParseError, in which case nothing from the line is usable
    """
    tokens = tokenize(line)
    if not tokens:
        return []

    background = False
    if tokens[-1].is_unquoted("&"):
        background = True
        tokens.pop()

    commands = []
    current = Command()
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.is_unquoted("|"):
            commands.append(current)
            current = Command()
            i += 1
        elif tok.is_operator():
            op, target, raw, i = _redirect_target(tokens, i)
            if op == "<":
                current.input_path = target
            else:
                current.output_path = target
            current.words.append(raw)
        else:
            current.args.append(tok.text)
            current.words.append(tok.raw)
            i += 1

    # A stage after a trailing | never gets arguments; drop it
    if current.args:
        commands.append(current)
    elif current.input_path is not None or current.output_path is not None:
        raise ParseError("syntax error: redirection without a command")

    if commands and background:
        commands[-1].background = True

    return commands


def parse_command(line):
    """
    Parse a line, reporting syntax errors on stderr.
    Returns: list of Command, empty when the line is blank or malformed
    """
    try:
        return parse_line(line)
    except ParseError as e:
        print(f"{SHELL_NAME}: {e}", file=sys.stderr)
        return []


def pipeline_text(commands):
    """Display text of a whole pipeline, used for job listings."""
    return " | ".join(cmd.text for cmd in commands if cmd.text)
