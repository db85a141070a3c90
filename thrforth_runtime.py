#!/usr/bin/env python3
# thrforth_runtime.py
#
# Runtime thrforth au-dessus de thrforth_dictionary :
# - Context : état d'une tâche (pile, pile retour factice, variables, ip par niveau)
# - Runtime : dictionnaire, registre des tâches, variables globales, contexte actif
# - interpréteur interne à deux stratégies : ATOMIC (linéaire) et COMPOSITE (sauts, imbrication)
#
# Exécution mono-thread et coopérative : une seule tâche active à la fois.

from __future__ import annotations

import io
import sys
import unittest
from contextlib import redirect_stdout
from typing import Any, Dict, List, Optional, Sequence, TextIO, Tuple, Union

from thrforth_dictionary import (
    CodeClass, Dictionary, ForthError, Instruction, MalformedWord, StackUnderflow,
    UndefinedWord, Word,
    ROOT_VOCABULARY, USER_VOCABULARY,
)
from thrforth_primitives import JUMP_WORDS, install_primitives

DEFAULT_TASK = "main"


class Context:
    """
    Contexte d'exécution d'une tâche.

    - stack   : pile de données
    - rstack  : pile retour factice (n'influence jamais le flot de contrôle)
    - status  : valeur produite par la dernière instruction, ou None
    - ip      : niveau d'imbrication -> index (1-based) de l'instruction courante
    - level   : niveau d'imbrication courant (0 = hors de tout mot COMPOSITE)
    """

    def __init__(self, name: str, entry: Word) -> None:
        self.name: str = name
        self.entry: Word = entry
        self.stack: List[Any] = []
        self.rstack: List[Any] = []
        self.status: Any = None
        self.variables: Dict[str, Any] = {}
        self.ip: Dict[int, int] = {}
        self.level: int = 0
        # >0 tant qu'un mot ATOMIC est en cours au niveau courant
        self.atomic_depth: int = 0

    def __repr__(self) -> str:
        return f"<Context {self.name} entry={self.entry.name} depth={len(self.stack)}>"

    # ---- pile de données ----
    def push(self, value: Any) -> None:
        self.stack.append(value)

    def pop(self) -> Any:
        if not self.stack:
            raise StackUnderflow("stack underflow")
        return self.stack.pop()

    def peek(self) -> Any:
        if not self.stack:
            raise StackUnderflow("stack underflow")
        return self.stack[-1]

    def depth(self) -> int: return len(self.stack)

    # ---- pile retour factice ----
    def rpush(self, value: Any) -> None:
        self.rstack.append(value)

    def rpop(self) -> Any:
        if not self.rstack:
            raise StackUnderflow("return stack underflow")
        return self.rstack.pop()


class Runtime:
    """
    Objet runtime passé explicitement à toutes les opérations.

    Remplace l'état global (dictionnaire, contexte actif, variables globales).
    Le dictionnaire est construit paresseusement au premier init().
    """

    def __init__(self, *, out: Optional[TextIO] = None, err: Optional[TextIO] = None) -> None:
        self._dict: Optional[Dictionary] = None
        self.tasks: Dict[str, Context] = {}
        self.variables: Dict[str, Any] = {}
        self.active: Optional[Context] = None
        # None = sys.stdout / sys.stderr résolus au moment de l'écriture
        self.out = out
        self.err = err

    # ----------------- Sorties -----------------

    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        (self.out or sys.stdout).write(text)

    def diag(self, text: str) -> None:
        """Diagnostics (instruction en échec)."""
        (self.err or sys.stderr).write(text)

    # ----------------- Dictionnaire -----------------

    @property
    def dict(self) -> Dictionary:
        if self._dict is None:
            d = Dictionary()
            install_primitives(d)
            self._dict = d
        return self._dict

    def define(self, name: str, names: Sequence[Union[str, Tuple[str, Any]]],
               composite: Optional[bool] = None) -> Word:
        """
        Contrat du compilateur : résout chaque nom via search (UndefinedWord sinon)
        puis crée le mot. Si composite est None, COMPOSITE dès qu'une instruction
        appelle un mot secondaire ou un saut, ATOMIC sinon.
        """
        body: List[Instruction] = []
        needs_levels = False
        for item in names:
            wname, arg = (item, None) if isinstance(item, str) else item
            w = self.dict.lookup(wname)
            if w.is_secondary() or w.name in JUMP_WORDS:
                needs_levels = True
            body.append(Instruction(w.token, arg))
        if composite is None:
            composite = needs_levels
        cc = CodeClass.COMPOSITE if composite else CodeClass.ATOMIC
        return self.dict.create(name, cc, body)

    # ----------------- Tâches -----------------

    def init(self, task_name: str, entry_word: Union[Word, str]) -> Context:
        entry = entry_word if isinstance(entry_word, Word) else self.dict.lookup(entry_word)
        ctx = Context(task_name, entry)
        self.tasks[task_name] = ctx
        return ctx

    def run(self, ctx: Context) -> Context:
        """
        Exécute le mot d'entrée de ctx jusqu'au bout, puis retire ctx du
        registre s'il y occupe encore son nom.
        """
        previous = self.active
        self.active = ctx
        try:
            ok, value = self._invoke(Instruction(ctx.entry.token))
            ctx.status = value if ok else None
        finally:
            self.active = previous
            if self.tasks.get(ctx.name) is ctx:
                del self.tasks[ctx.name]
        return ctx

    @property
    def ctx(self) -> Context:
        if self.active is None:
            raise ForthError("no active context")
        return self.active

    # ----------------- Interpréteur interne -----------------

    def execute(self, w: Word, ins: Optional[Instruction] = None) -> Any:
        cc = w.code_class
        if cc is CodeClass.PRIMITIVE:
            if not w.prim: raise MalformedWord(f"Primitive {w.name} missing impl")
            return w.prim(self, ins if ins is not None else Instruction(w.token))
        if cc is CodeClass.ATOMIC:
            return self._run_atomic(w)
        if cc is CodeClass.COMPOSITE:
            return self._run_composite(w)
        raise MalformedWord(f"bad code class for {w.name}: {cc!r}")

    def _invoke(self, ins: Instruction) -> Tuple[bool, Any]:
        """
        Une instruction = une frontière d'erreur.
        Retourne (True, valeur) ou (False, None) après diagnostic.
        Toute exception d'un gestionnaire s'arrête ici, sauf MalformedWord.
        """
        w = self.dict.find_by_token(ins.token)
        try:
            if w is None:
                raise UndefinedWord(f"token {ins.token}")
            return True, self.execute(w, ins)
        except MalformedWord:
            raise
        except Exception as e:
            who = self.active.name if self.active is not None else "?"
            what = w.name if w is not None else "?"
            self.diag(f"[{who}] {what}: {type(e).__name__}: {e}\n")
            return False, None

    def _run_atomic(self, w: Word) -> Any:
        ctx = self.ctx
        ctx.atomic_depth += 1
        try:
            for ins in w.body:
                ok, value = self._invoke(ins)
                ctx.status = value if ok else None
        finally:
            ctx.atomic_depth -= 1
        return ctx.status

    def _run_composite(self, w: Word) -> Any:
        """
        Un niveau démarre toujours à l'index 1 : son emplacement ip est retiré
        à la sortie du niveau, il n'y a donc jamais de reprise en cours de corps.
        """
        ctx = self.ctx
        saved_atomic = ctx.atomic_depth
        ctx.atomic_depth = 0
        ctx.level += 1
        level = ctx.level
        ctx.ip[level] = 1
        try:
            while ctx.ip[level] <= len(w.body):
                ins = w.body[ctx.ip[level] - 1]
                ok, value = self._invoke(ins)
                ctx.status = value if ok else None
                ctx.ip[level] += 1
        finally:
            ctx.ip.pop(level, None)
            ctx.level -= 1
            ctx.atomic_depth = saved_atomic
        return ctx.status


_RUNTIME: Optional[Runtime] = None

def get_runtime() -> Runtime:
    """Instance partagée pour un embarquement mono-thread."""
    global _RUNTIME
    if _RUNTIME is None:
        _RUNTIME = Runtime()
    return _RUNTIME


####################################################################
# Tests

def _build_levels(rt: Runtime) -> Word:
    rt.define("level4", ["=:"])
    rt.define("level3", [":=", "level4"])
    rt.define("level2", ["level3", ".", "cr"])
    return rt.define("level1", ["level2", ".", ".", "cr"])


class TestRuntime_Tasks(unittest.TestCase):
    def setUp(self) -> None:
        self.out = io.StringIO()
        self.err = io.StringIO()
        self.rt = Runtime(out=self.out, err=self.err)

    def test_dictionary_built_lazily(self):
        self.assertIsNone(self.rt._dict)
        ctx = self.rt.init("t", ".")
        self.assertIsNotNone(self.rt._dict)
        self.assertEqual(self.rt.dict.get_search(), ROOT_VOCABULARY)
        self.assertEqual(self.rt.dict.get_current(), ROOT_VOCABULARY)
        self.assertEqual((ctx.stack, ctx.rstack, ctx.status, ctx.variables, ctx.ip, ctx.level),
                         ([], [], None, {}, {}, 0))

    def test_init_registers_and_run_deregisters(self):
        ctx = self.rt.init("t", "cr")
        self.assertIs(self.rt.tasks["t"], ctx)
        self.rt.run(ctx)
        self.assertNotIn("t", self.rt.tasks)
        self.assertIsNone(self.rt.active)
        self.assertEqual(self.out.getvalue(), "\n")

    def test_replaced_context_stays_registered(self):
        old = self.rt.init("t", "cr")
        new = self.rt.init("t", "cr")
        self.rt.run(old)
        self.assertIs(self.rt.tasks["t"], new)

    def test_stack_underflow(self):
        ctx = self.rt.init("t", "cr")
        with self.assertRaises(StackUnderflow):
            ctx.pop()
        with self.assertRaises(StackUnderflow):
            ctx.rpop()

    def test_define_picks_dispatch_strategy(self):
        a = self.rt.define("a", [".", "cr"])
        b = self.rt.define("b", ["a"])
        c = self.rt.define("c", [("branch", 1)])
        self.assertIs(a.code_class, CodeClass.ATOMIC)
        self.assertIs(b.code_class, CodeClass.COMPOSITE)
        self.assertIs(c.code_class, CodeClass.COMPOSITE)
        self.assertIs(self.rt.define("d", ["a"], composite=False).code_class, CodeClass.ATOMIC)
        with self.assertRaises(UndefinedWord):
            self.rt.define("e", ["missing"])

    def test_get_runtime_is_shared(self):
        self.assertIs(get_runtime(), get_runtime())


class TestRuntime_Dispatch(unittest.TestCase):
    def setUp(self) -> None:
        self.out = io.StringIO()
        self.err = io.StringIO()
        self.rt = Runtime(out=self.out, err=self.err)

    def _task(self, entry, *values) -> Context:
        ctx = self.rt.init("t", entry)
        for v in values:
            ctx.push(v)
        return ctx

    def test_end_to_end_levels(self):
        entry = _build_levels(self.rt)
        ctx = self._task(entry, 5, "hello world", "ONE", 1, "ONE")
        self.rt.run(ctx)
        self.assertEqual(self.out.getvalue(), "1 \nhello world 5 \n")
        self.assertEqual(ctx.variables, {"ONE": 1})
        self.assertEqual(ctx.stack, [])
        self.assertEqual(ctx.level, 0)
        self.assertEqual(ctx.ip, {})
        self.assertEqual(self.err.getvalue(), "")

    def test_end_to_end_on_stdout(self):
        entry = _build_levels(self.rt)
        rt = Runtime(err=self.err)
        rt._dict = self.rt.dict
        ctx = rt.init("t", entry)
        ctx.stack.extend([5, "hello world", "ONE", 1, "ONE"])
        buf = io.StringIO()
        with redirect_stdout(buf):
            rt.run(ctx)
        self.assertEqual(buf.getvalue(), "1 \nhello world 5 \n")

    def test_atomic_failure_does_not_stop_sequence(self):
        w = self.rt.define("w", [".", "cr", "cr"])
        ctx = self.rt.run(self._task(w))
        self.assertEqual(self.out.getvalue(), "\n\n")
        self.assertIn("StackUnderflow", self.err.getvalue())
        self.assertIn("[t] .", self.err.getvalue())
        self.assertIsNotNone(ctx.status)

    def test_status_cleared_on_last_failure(self):
        w = self.rt.define("w", ["cr", "."])
        ctx = self.rt.run(self._task(w))
        self.assertIsNone(ctx.status)

    def test_composite_failure_continues(self):
        inner = self.rt.define("inner", ["."], composite=True)
        outer = self.rt.define("outer", ["inner", "."])
        self.rt.run(self._task(outer, "a"))
        self.assertEqual(self.out.getvalue(), "a ")
        self.assertEqual(self.err.getvalue().count("StackUnderflow"), 1)
        self.assertIs(inner.code_class, CodeClass.COMPOSITE)

    def test_primitive_entry_word(self):
        ctx = self.rt.run(self._task(".", 42))
        self.assertEqual(self.out.getvalue(), "42 ")
        self.assertEqual(ctx.status, 42)
        ctx = self.rt.run(self._task("."))
        self.assertIsNone(ctx.status)

    def test_forgotten_word_in_body_is_advisory(self):
        d = self.rt.dict
        d.use(USER_VOCABULARY)
        helper = self.rt.define("helper", ["cr"])
        d.set_current(ROOT_VOCABULARY)
        w = self.rt.define("w", ["helper", "cr"])
        d.use(USER_VOCABULARY)
        d.forget("helper")
        self.rt.run(self._task(w))
        self.assertEqual(self.out.getvalue(), "\n")
        self.assertIn("UndefinedWord", self.err.getvalue())
        self.assertIsNone(d.find_by_token(helper.token))

    def test_bad_code_class_is_programming_error(self):
        w = self.rt.define("w", ["cr"])
        w.code_class = "bogus"
        with self.assertRaises(RuntimeError) as cm:
            self.rt.execute(w)
        self.assertNotIsInstance(cm.exception, ForthError)

    def test_python_error_in_primitive_does_not_stop_sequence(self):
        self.rt.dict.add_primitive("boom", lambda rt, ins: 1 // 0)
        w = self.rt.define("w", ["boom", "cr"])
        ctx = self.rt.run(self._task(w))
        self.assertEqual(self.out.getvalue(), "\n")
        self.assertIn("[t] boom: ZeroDivisionError", self.err.getvalue())
        self.assertIs(ctx.status, True)

    def test_python_error_inside_composite_continues(self):
        self.rt.dict.add_primitive("bad-add", lambda rt, ins: rt.ctx.pop() + 1)
        w = self.rt.define("w", ["bad-add", "."], composite=True)
        ctx = self.rt.run(self._task(w, "z", "a"))
        self.assertEqual(self.out.getvalue(), "z ")
        self.assertIn("TypeError", self.err.getvalue())
        self.assertEqual((ctx.level, ctx.ip), (0, {}))

    def test_unencodable_output_is_advisory(self):
        class StrictOut(io.StringIO):
            def write(self, s):
                s.encode("utf-8")
                return super().write(s)

        out = StrictOut()
        rt = Runtime(out=out, err=self.err)
        w = rt.define("w", [".", "cr"])
        ctx = rt.init("t", w)
        ctx.push("\ud800")
        rt.run(ctx)
        self.assertEqual(out.getvalue(), "\n")
        self.assertIn("UnicodeEncodeError", self.err.getvalue())

    def test_malformed_word_deep_in_graph_propagates(self):
        inner = self.rt.define("inner", ["cr"])
        outer = self.rt.define("outer", ["inner", "cr"])
        inner.code_class = "bogus"
        ctx = self._task(outer)
        with self.assertRaises(MalformedWord):
            self.rt.run(ctx)
        self.assertEqual((ctx.level, ctx.ip), (0, {}))
        self.assertNotIn("t", self.rt.tasks)

    def test_primitive_without_impl_propagates(self):
        self.rt.dict.create("hollow", CodeClass.PRIMITIVE)
        w = self.rt.define("w", ["cr", "hollow", "cr"])
        with self.assertRaises(MalformedWord):
            self.rt.run(self._task(w))
        self.assertEqual(self.out.getvalue(), "\n")

    def test_composite_level_always_starts_at_first_instruction(self):
        w = self.rt.define("w", ["cr", "cr"], composite=True)
        ctx = self._task(w)
        ctx.ip[1] = 2
        self.rt.run(ctx)
        self.assertEqual(self.out.getvalue(), "\n\n")
        self.assertEqual(ctx.ip, {})

    def test_nested_levels_keep_their_own_ip(self):
        seen: List[Tuple[str, int, Dict[int, int]]] = []

        def trace(rt, ins):
            seen.append((ins.arg, rt.ctx.level, dict(rt.ctx.ip)))
            return ins.arg

        self.rt.dict.add_primitive("trace", trace)
        self.rt.define("l4", [("trace", "l4")])
        self.rt.define("l3", [("trace", "l3a"), "l4", ("trace", "l3b")])
        self.rt.define("l2", ["l3", ("trace", "l2"), "l3"])
        l1 = self.rt.define("l1", ["l2", ("trace", "l1a"), "l2", ("trace", "l1b")])
        ctx = self.rt.run(self._task(l1))
        self.assertEqual(seen[0], ("l3a", 3, {1: 1, 2: 1, 3: 1}))
        self.assertEqual(seen[1], ("l4", 3, {1: 1, 2: 1, 3: 2}))
        self.assertEqual(seen[2], ("l3b", 3, {1: 1, 2: 1, 3: 3}))
        self.assertEqual(seen[3], ("l2", 2, {1: 1, 2: 2}))
        # re-entrée de l3 au même niveau : index repart à 1
        self.assertEqual(seen[4], ("l3a", 3, {1: 1, 2: 3, 3: 1}))
        self.assertEqual(seen[7], ("l1a", 1, {1: 2}))
        self.assertEqual(seen[8], ("l3a", 3, {1: 3, 2: 1, 3: 1}))
        self.assertEqual(seen[-1], ("l1b", 1, {1: 4}))
        self.assertEqual(len(seen), 16)
        self.assertEqual(ctx.status, "l1b")
        self.assertEqual((ctx.level, ctx.ip), (0, {}))

    def test_relative_jumps_loop(self):
        counter = {"n": 0}
        marks: List[int] = []

        def tick(rt, ins):
            counter["n"] += 1
            rt.ctx.push(1 if counter["n"] < 3 else 0)
            return True

        def mark(rt, ins):
            marks.append(counter["n"])
            return True

        self.rt.dict.add_primitive("tick", tick)
        self.rt.dict.add_primitive("mark", mark)
        loop = self.rt.define("loop", ["tick", ("0branch", 3), "mark", ("branch", -3)])
        self.assertIs(loop.code_class, CodeClass.COMPOSITE)
        self.rt.run(self._task(loop))
        self.assertEqual(marks, [1, 2])
        self.assertEqual(self.err.getvalue(), "")

    def test_jump_refused_inside_atomic(self):
        w = self.rt.define("w", [("branch", 2), "cr"], composite=False)
        self.rt.run(self._task(w))
        self.assertEqual(self.out.getvalue(), "\n")
        self.assertIn("branch", self.err.getvalue())


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)

if __name__ == "__main__":
    test_all()
