#!/usr/bin/env python3
# thrforth_tokenizer.py
#
# Analyseur lexical thrforth.
# - entrée : une suite de sources, chaque source produit une ligne par itération
# - sortie : générateur paresseux de tokens (état remis à zéro à chaque source)
#
# Règles :
#   - les blancs hors guillemets séparent les tokens
#   - un token qui commence par # est un commentaire jusqu'à la fin de ligne (jamais émis)
#   - un token qui commence par " est une chaîne : guillemets conservés, échappements
#     \ résolus, peut continuer sur les lignes suivantes
#   - tous les autres tokens sont passés en minuscules

from __future__ import annotations

import os
import sys
import tempfile
import unittest
from enum import Enum
from typing import Iterable, Iterator, List, Optional

SIMPLE_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "a": "\a",
    "b": "\b", "f": "\f", "v": "\v", "\\": "\\", '"': '"', "'": "'",
}
HEX_ESCAPES = {"x": 2, "u": 4, "U": 8}
HEX_DIGITS = "0123456789abcdefABCDEF"
OCT_DIGITS = "01234567"
OCT_MAX = 3


class LexState(Enum):
    SPACE  = "SPACE"
    BARE   = "BARE"
    STRING = "STRING"
    ESCAPE = "ESCAPE"


class Tokenizer:
    """
    Machine à états du lexer. Une instance traite une source à la fois ;
    tokens() remet l'état à zéro avant de commencer.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.state: LexState = LexState.SPACE
        self._buf: List[str] = []
        self._esc: str = ""
        self._join_newline: bool = False

    def tokens(self, source: Iterable[str]) -> Iterator[str]:
        self.reset()
        for raw in source:
            yield from self._feed_line(raw.rstrip("\r\n"))
        if self.state is LexState.STRING:
            # chaîne non terminée en fin de source : on garde le partiel tel quel
            yield "".join(self._buf)
        self.reset()

    def _flush_escape(self) -> None:
        self._buf.append("\\" + self._esc)
        self._esc = ""
        self.state = LexState.STRING

    def _finish_octal(self) -> None:
        # _esc = "o" + 1 à 3 chiffres octaux
        self._buf.append(chr(int(self._esc[1:], 8)))
        self._esc = ""
        self.state = LexState.STRING

    def _end_escape(self) -> None:
        """Séquence interrompue : l'octal est déjà complet, l'hexa reste littéral."""
        if self._esc[:1] == "o": self._finish_octal()
        else: self._flush_escape()

    def _take_token(self) -> str:
        tok = "".join(self._buf)
        self._buf = []
        self.state = LexState.SPACE
        return tok

    def _feed_line(self, line: str) -> Iterator[str]:
        if self.state is LexState.STRING and self._join_newline:
            self._buf.append("\n")
        self._join_newline = False
        i, n = 0, len(line)
        while i < n:
            c = line[i]
            st = self.state
            if st is LexState.SPACE:
                if c.isspace():
                    i += 1; continue
                if c == "#":
                    return
                self._buf = [c]
                self.state = LexState.STRING if c == '"' else LexState.BARE
                i += 1; continue
            if st is LexState.BARE:
                if c.isspace():
                    yield self._take_token().lower()
                else:
                    self._buf.append(c)
                i += 1; continue
            if st is LexState.STRING:
                if c == "\\":
                    self.state = LexState.ESCAPE
                    self._esc = ""
                elif c == '"':
                    self._buf.append(c)
                    yield self._take_token()
                else:
                    self._buf.append(c)
                i += 1; continue
            # ESCAPE
            if not self._esc:
                if c in SIMPLE_ESCAPES:
                    self._buf.append(SIMPLE_ESCAPES[c])
                    self.state = LexState.STRING
                elif c in OCT_DIGITS:
                    self._esc = "o" + c
                elif c in HEX_ESCAPES:
                    self._esc = c
                else:
                    self._buf.append("\\" + c)
                    self.state = LexState.STRING
                i += 1; continue
            if self._esc[0] == "o":
                if c not in OCT_DIGITS:
                    # octal court (\0, \12...) : résolu, c est re-traité
                    self._finish_octal(); continue
                self._esc += c
                i += 1
                if len(self._esc) - 1 == OCT_MAX:
                    self._finish_octal()
                continue
            if c in HEX_DIGITS:
                self._esc += c
                i += 1
                if len(self._esc) - 1 == HEX_ESCAPES[self._esc[0]]:
                    code = int(self._esc[1:], 16)
                    if code > sys.maxunicode:
                        # \U hors de l'espace Unicode : gardé tel quel
                        self._flush_escape(); continue
                    self._buf.append(chr(code))
                    self._esc = ""
                    self.state = LexState.STRING
                continue
            # séquence hexadécimale incomplète : gardée telle quelle, c est re-traité
            self._flush_escape()

        # fin de ligne
        if self.state is LexState.BARE:
            yield self._take_token().lower()
        elif self.state is LexState.ESCAPE:
            if self._esc:
                self._end_escape()
                self._join_newline = True
            else:
                # \ en fin de ligne : la chaîne continue sans saut de ligne
                self.state = LexState.STRING
        elif self.state is LexState.STRING:
            self._join_newline = True


def tokenize(sources: Iterable[Iterable[str]]) -> Iterator[str]:
    """Tokens de toutes les sources, dans l'ordre."""
    lexer = Tokenizer()
    for source in sources:
        yield from lexer.tokens(source)


def tokenize_line(line: str) -> List[str]:
    return list(Tokenizer().tokens([line]))


def lines_from_text(text: str) -> Iterator[str]:
    for line in text.splitlines():
        yield line


def lines_from_file(path: str) -> Iterator[str]:
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            yield line


def is_string_token(tok: str) -> bool:
    """Vrai si le token est une chaîne complète, ouverte et fermée par "."""
    return len(tok) >= 2 and tok[0] == '"' and tok[-1] == '"'


def string_value(tok: str) -> str:
    """Contenu de la chaîne, sans ses deux guillemets."""
    return tok[1:-1]


def try_parse_int(tok: str) -> Optional[int]:
    try:
        return int(tok, 10)
    except ValueError:
        return None


####################################################################
# Tests

class TestTokenizer(unittest.TestCase):
    def test_definition_line_with_comment(self):
        self.assertEqual(tokenize_line('"level4" : =: ; # level 4'), ['"level4"', ":", "=:", ";"])

    def test_bare_tokens_are_lowered(self):
        self.assertEqual(tokenize_line("  DUP\tSwap  ROT  "), ["dup", "swap", "rot"])

    def test_string_keeps_case_and_spaces(self):
        self.assertEqual(tokenize_line('."x" "Hello  World"   X'), ['."x"', '"Hello  World"', "x"])

    def test_hash_inside_token_or_string_is_not_comment(self):
        self.assertEqual(tokenize_line('a#b "c # d" # rest'), ["a#b", '"c # d"'])

    def test_string_followed_by_token_without_space(self):
        self.assertEqual(tokenize_line('"ab"CD'), ['"ab"', "cd"])

    def test_escapes(self):
        self.assertEqual(tokenize_line(r'"a\tb\n\"q\"\\"'), ['"a\tb\n"q"\\"'])
        self.assertEqual(tokenize_line(r'"\x41é\q"'), ['"Aé\\q"'])
        self.assertEqual(tokenize_line(r'"\x4g"'), ['"\\x4g"'])
        self.assertEqual(tokenize_line(r'"\x4"'), ['"\\x4"'])

    def test_octal_escapes(self):
        self.assertEqual(tokenize_line(r'"\101\012"'), ['"A\n"'])
        self.assertEqual(tokenize_line(r'"\0"'), ['"\x00"'])
        self.assertEqual(tokenize_line(r'"\1a\1012"'), ['"\x01aA2"'])
        self.assertEqual(tokenize_line(r'"\8"'), ['"\\8"'])

    def test_octal_escape_at_end_of_line(self):
        self.assertEqual(list(tokenize([['"a\\7', 'b"']])), ['"a\x07\nb"'])

    def test_long_unicode_escape(self):
        self.assertEqual(tokenize_line(r'"\U0001F600!"'), ['"\U0001F600!"'])
        self.assertEqual(tokenize_line(r'"\U0001f60"'), ['"\\U0001f60"'])
        self.assertEqual(tokenize_line(r'"\U00110000"'), ['"\\U00110000"'])

    def test_multiline_string(self):
        src = ['say "first', "  second", 'third" done']
        self.assertEqual(list(tokenize([src])), ["say", '"first\n  second\nthird"', "done"])

    def test_backslash_at_end_of_line_joins(self):
        src = ['"abc\\', 'def"']
        self.assertEqual(list(tokenize([src])), ['"abcdef"'])

    def test_unterminated_string_at_end_of_source(self):
        self.assertEqual(list(tokenize([['x "open', "more"], ["NEXT"]])),
                         ["x", '"open\nmore', "next"])

    def test_state_reset_per_source(self):
        lexer = Tokenizer()
        self.assertEqual(list(lexer.tokens(['"a'])), ['"a'])
        self.assertEqual(list(lexer.tokens(["B c"])), ["b", "c"])
        self.assertIs(lexer.state, LexState.SPACE)

    def test_lazy_generators(self):
        pulled: List[str] = []

        def source():
            for line in ["one two", "three"]:
                pulled.append(line)
                yield line

        it = tokenize([source()])
        self.assertEqual(next(it), "one")
        self.assertEqual(pulled, ["one two"])
        self.assertEqual(list(it), ["two", "three"])

    def test_comment_only_and_blank_lines(self):
        self.assertEqual(list(tokenize([lines_from_text("# nothing\n\n   \n#x y")])), [])

    def test_lines_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "src.fs")
            with open(path, "w", encoding="utf-8") as f:
                f.write('"Hi there" .\r\nCR # done\n')
            self.assertEqual(list(tokenize([lines_from_file(path)])), ['"Hi there"', ".", "cr"])

    def test_helpers(self):
        self.assertTrue(is_string_token('"x"'))
        self.assertFalse(is_string_token('"'))
        self.assertEqual(string_value('"x y"'), "x y")
        self.assertEqual(try_parse_int("-12"), -12)
        self.assertIsNone(try_parse_int("1x"))


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)

if __name__ == "__main__":
    test_all()
