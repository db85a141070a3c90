#!/usr/bin/env python3
# thrforth_host_repl.py
#
# REPL host pour thrforth (frontal minimal, pas de compilateur ":") :
# - les littéraux ("chaîne", entiers) s'empilent dans une pile en attente
# - un mot nu est cherché dans le dictionnaire puis exécuté comme mot d'entrée
#   d'une tâche (init + run) ; la pile et les variables locales restantes
#   sont reportées sur la tâche suivante
# - les lignes commençant par une dot-command sont des commandes host
#
# Dot-commands :
#   .help  .stack  .words  .vocs  .use VOC  .vocabulary NAME  .forget WORD
#   .see WORD  .global NAME  .vars  .tasks  .read-from "file"  .bye
#
# Tests intégrés :
#   python thrforth_host_repl.py --test

from __future__ import annotations

import io
import os
import shlex
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from typing import Any, Dict, Iterable, List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import CompleteEvent, Completer, Completion
from prompt_toolkit.document import Document
from prompt_toolkit.patch_stdout import patch_stdout

from thrforth_dictionary import DictError, USER_VOCABULARY
from thrforth_runtime import DEFAULT_TASK, Runtime
from thrforth_tokenizer import (
    is_string_token, lines_from_file, string_value, tokenize, try_parse_int,
)
from thrforth_primitives import display

DOT_CMDS = {".bye", ".forget", ".global", ".help", ".read-from", ".see", ".stack",
            ".tasks", ".use", ".vars", ".vocabulary", ".vocs", ".words"}


class WordCompleter(Completer):
    """Complète les dot-commands en début de ligne et les mots visibles ensuite."""

    def __init__(self, repl: "HostREPL") -> None:
        self.repl = repl

    def get_completions(self, document, complete_event):
        word_before = document.get_word_before_cursor(WORD=True)
        if not word_before:
            return
        start_pos = -len(word_before)
        if document.text_before_cursor.lstrip() == word_before and word_before.startswith("."):
            for name in sorted(DOT_CMDS):
                if name.startswith(word_before):
                    yield Completion(name, start_position=start_pos)
        prefix = word_before.lower()
        for w in self.repl.rt.dict.visible_words():
            if w.name.startswith(prefix):
                yield Completion(w.name, start_position=start_pos)


class HostREPL:
    """
    REPL texte au-dessus d'un Runtime.

    - feed(text) : interprète un bloc de texte (plusieurs lignes possibles)
    - les dot-commands sont reconnues ligne par ligne
    """

    def __init__(self, runtime: Optional[Runtime] = None, *, task_name: str = DEFAULT_TASK) -> None:
        self.rt = runtime if runtime is not None else Runtime()
        self.task_name = task_name
        # pile et variables locales transmises d'une tâche à la suivante
        self.pending: List[Any] = []
        self.locals: Dict[str, Any] = {}
        # nouvelles définitions dans le vocabulaire utilisateur
        self.rt.dict.use(USER_VOCABULARY)

    # ------------------------------------------------------------------
    # Interprétation
    # ------------------------------------------------------------------

    def feed(self, text: str) -> None:
        forth_lines: List[str] = []
        for line in text.splitlines():
            if self._is_dot_command(line):
                self.interpret_tokens(tokenize([forth_lines]))
                forth_lines = []
                self._handle_dot_command(line)
            else:
                forth_lines.append(line)
        self.interpret_tokens(tokenize([forth_lines]))

    def interpret_tokens(self, tokens: Iterable[str]) -> None:
        for tok in tokens:
            self.interpret_token(tok)

    def interpret_token(self, tok: str) -> None:
        if is_string_token(tok):
            self.pending.append(string_value(tok))
            return
        val = try_parse_int(tok)
        if val is not None:
            self.pending.append(val)
            return
        w = self.rt.dict.search(tok)
        if w is None:
            print(f"undefined word: {tok}")
            return
        ctx = self.rt.init(self.task_name, w)
        ctx.stack.extend(self.pending)
        ctx.variables.update(self.locals)
        self.rt.run(ctx)
        self.pending = list(ctx.stack)
        self.locals = dict(ctx.variables)

    # ------------------------------------------------------------------
    # Dot-commands
    # ------------------------------------------------------------------

    def _is_dot_command(self, line: str) -> bool:
        parts = line.split(None, 1)
        return bool(parts) and parts[0] in DOT_CMDS

    def _handle_dot_command(self, line: str) -> None:
        try:
            parts = shlex.split(line)
        except ValueError as e:
            print(f"parse error in dot-command: {e}")
            return
        cmd, args = parts[0], parts[1:]
        handler = self._dotcmd_dispatch().get(cmd)
        if handler is None:
            print(f"unknown dot-command: {cmd!r}")
            return
        try:
            handler(args)
        except DictError as e:
            print(f"{cmd}: {type(e).__name__}: {e}")

    def _dotcmd_dispatch(self):
        return {
            ".help": self._dot_help,
            ".stack": self._dot_stack,
            ".words": self._dot_words,
            ".vocs": self._dot_vocs,
            ".use": self._dot_use,
            ".vocabulary": self._dot_vocabulary,
            ".forget": self._dot_forget,
            ".see": self._dot_see,
            ".global": self._dot_global,
            ".vars": self._dot_vars,
            ".tasks": self._dot_tasks,
            ".read-from": self._dot_read_from,
            ".bye": self._dot_bye,
        }

    def _need_arg(self, cmd: str, args: List[str]) -> Optional[str]:
        if not args:
            print(f"usage: {cmd} NAME")
            return None
        return args[0]

    def _dot_help(self, args):
        print("Dot-commands:")
        print("  .stack .words .vocs .vars .tasks")
        print("  .use VOC  .vocabulary NAME  .forget WORD  .see WORD")
        print("  .global NAME              - pop pending value into a global variable")
        print("  .read-from \"file\"         - interpret a source file")
        print("  .bye                      - exit REPL")

    def _dot_stack(self, args):
        print(f"<{len(self.pending)}> " + " ".join(display(v) for v in self.pending))

    def _dot_words(self, args):
        print(" ".join(w.name for w in self.rt.dict.visible_words()))

    def _dot_vocs(self, args):
        d = self.rt.dict
        for name in d.vocabulary_names():
            marks = ("S" if name == d.get_search() else " ") + ("C" if name == d.get_current() else " ")
            prev = d.vocabulary(name).prev or "-"
            print(f"{marks} {name:<12s} prev={prev}")

    def _dot_use(self, args):
        name = self._need_arg(".use", args)
        if name is not None:
            self.rt.dict.use(name)

    def _dot_vocabulary(self, args):
        name = self._need_arg(".vocabulary", args)
        if name is not None:
            self.rt.dict.new_vocabulary(name)
            print(f"NEW vocabulary {name!r} prev={self.rt.dict.vocabulary(name).prev!r}")

    def _dot_forget(self, args):
        name = self._need_arg(".forget", args)
        if name is not None:
            self.rt.dict.forget(name.lower())

    def _dot_see(self, args):
        name = self._need_arg(".see", args)
        if name is None:
            return
        w = self.rt.dict.search(name.lower())
        if w is None:
            print(f"undefined word: {name}")
            return
        print(self.rt.dict.disasm(w))

    def _dot_global(self, args):
        name = self._need_arg(".global", args)
        if name is None:
            return
        if not self.pending:
            print(".global: stack underflow")
            return
        self.rt.variables[name] = self.pending.pop()

    def _dot_vars(self, args):
        for name, value in sorted(self.rt.variables.items()):
            print(f"global {name} = {display(value)}")
        for name, value in sorted(self.locals.items()):
            print(f"local  {name} = {display(value)}")

    def _dot_tasks(self, args):
        if not self.rt.tasks:
            print("(no tasks)")
            return
        for name, ctx in self.rt.tasks.items():
            print(f"{name:<12s} entry={ctx.entry.name} depth={ctx.depth()}")

    def _dot_read_from(self, args):
        path = self._need_arg(".read-from", args)
        if path is None:
            return
        try:
            self.interpret_tokens(tokenize([lines_from_file(path)]))
        except OSError as e:
            print(f"read-from: cannot open {path!r}: {e}")

    def _dot_bye(self, args):
        print("bye.")
        raise SystemExit(0)

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession + patch_stdout)
    # ------------------------------------------------------------------

    def run(self) -> None:
        print("thrforth REPL")
        print("Type words to run them. Use .help for dot-commands.")
        session = PromptSession(completer=WordCompleter(self))
        with patch_stdout():
            while True:
                try:
                    line = session.prompt(f"[{self.rt.dict.get_search()}] ok> ")
                except EOFError:
                    print("\nEOF -> quitting.")
                    break
                except KeyboardInterrupt:
                    print("\nKeyboardInterrupt (Ctrl-C). Use .bye to exit.")
                    continue
                if not line.strip():
                    continue
                try:
                    self.feed(line)
                except SystemExit:
                    return


def main() -> None:
    repl = HostREPL()
    repl.run()


# ======================================================================
# Tests intégrés (python thrforth_host_repl.py --test)
# ======================================================================

def _define_levels(rt: Runtime) -> None:
    rt.define("level4", ["=:"])
    rt.define("level3", [":=", "level4"])
    rt.define("level2", ["level3", ".", "cr"])
    rt.define("level1", ["level2", ".", ".", "cr"])


class TestHostREPL_Interpret(unittest.TestCase):
    def setUp(self):
        self.err = io.StringIO()
        self.repl = HostREPL(Runtime(err=self.err))

    def feed(self, src: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl.feed(src)
        return buf.getvalue()

    def test_literals_go_to_pending_stack(self):
        self.feed('1 "Two Words" -3')
        self.assertEqual(self.repl.pending, [1, "Two Words", -3])

    def test_levels_scenario(self):
        _define_levels(self.repl.rt)
        out = self.feed('5 "hello world" "ONE" 1 "ONE" LEVEL1  # run it')
        self.assertEqual(out, "1 \nhello world 5 \n")
        self.assertEqual(self.repl.pending, [])
        self.assertEqual(self.repl.locals, {"ONE": 1})
        self.assertEqual(self.repl.rt.tasks, {})

    def test_locals_carried_between_tasks(self):
        out = self.feed('42 "x" :=\n"x" =: .')
        self.assertEqual(out, "42 ")

    def test_undefined_word_and_failures_continue(self):
        out = self.feed("nope . 7 .")
        self.assertIn("undefined word: nope", out)
        self.assertTrue(out.endswith("7 "))
        self.assertIn("StackUnderflow", self.err.getvalue())

    def test_multiline_string_literal(self):
        self.feed('"a\nb"')
        self.assertEqual(self.repl.pending, ["a\nb"])


class TestHostREPL_DotCommands(unittest.TestCase):
    def setUp(self):
        self.repl = HostREPL(Runtime(err=io.StringIO()))

    def feed(self, src: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl.feed(src)
        return buf.getvalue()

    def test_stack(self):
        out = self.feed('1 "x"\n.stack')
        self.assertIn("<2> 1 x", out)

    def test_vocabularies_and_use(self):
        out = self.feed(".vocabulary app\n.use app\n.vocs")
        self.assertIn("NEW vocabulary 'app' prev='user'", out)
        self.assertEqual(self.repl.rt.dict.get_current(), "app")
        self.assertIn("SC app", out)
        out = self.feed(".vocabulary app")
        self.assertIn("DuplicateVocabulary", out)
        out = self.feed(".use missing")
        self.assertIn("UnknownVocabulary", out)

    def test_words_see_forget(self):
        rt = self.repl.rt
        rt.define("greet", [".", "cr"])
        rt.define("twice", ["greet", "greet"])
        out = self.feed(".words\n.see twice")
        self.assertIn("twice greet", out)
        self.assertIn(": twice  greet greet ;", out)
        self.feed(".forget GREET")
        self.assertIsNone(rt.dict.search("greet"))
        self.assertIsNone(rt.dict.search("twice"))
        self.assertIsNotNone(rt.dict.search("cr"))
        out = self.feed(".see twice")
        self.assertIn("undefined word", out)

    def test_global_variables(self):
        out = self.feed('10\n.global g\n20 "g" := "g" =: .\n.vars')
        self.assertEqual(self.repl.rt.variables, {"g": 20})
        self.assertEqual(self.repl.locals, {})
        self.assertIn("20 ", out)
        self.assertIn("global g = 20", out)

    def test_read_from(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "prog.fs")
            with open(path, "w", encoding="utf-8") as f:
                f.write('# demo\n"Hi" . CR\n')
            out = self.feed(f'.read-from "{path}"')
            self.assertEqual(out, "Hi \n")
            out = self.feed(f'.read-from "{path}.missing"')
            self.assertIn("cannot open", out)

    def test_tasks_and_help(self):
        out = self.feed(".tasks\n.help")
        self.assertIn("(no tasks)", out)
        self.assertIn("Dot-commands", out)

    def test_bye_raises_systemexit(self):
        with self.assertRaises(SystemExit):
            self.feed(".bye")

    def test_completer(self):
        comp = WordCompleter(self.repl)
        names = [c.text for c in comp.get_completions(Document(".st"), CompleteEvent())]
        self.assertEqual(names, [".stack"])
        names = [c.text for c in comp.get_completions(Document('1 "x" C'), CompleteEvent())]
        self.assertEqual(names, ["cr"])


if __name__ == "__main__":
    if "--test" in sys.argv:
        # Nettoie sys.argv pour unittest
        sys.argv = [sys.argv[0]]
        unittest.main()
    else:
        main()
