#!/usr/bin/env python3
# thrforth_primitives.py
#
# Jeu de primitives thrforth (exemple, facile à étendre) :
#   .        ( x -- )        affiche x suivi d'un espace
#   cr       ( -- )          retour à la ligne
#   =:       ( name -- x )   lecture de variable (locale puis globale)
#   :=       ( x name -- )   écriture de variable (locale, globale, sinon nouvelle locale)
#   branch   ( -- )          saut relatif (arg de l'instruction)
#   0branch  ( flag -- )     saut relatif si flag est nul
#   >r / r>                  pile retour factice
#
# Chaque primitive reçoit (rt, ins) : le Runtime et l'Instruction en cours.
# Un échec est signalé par une exception ForthError ; la valeur retournée
# devient le status du contexte.

from __future__ import annotations

import io
import sys
import unittest
from typing import TYPE_CHECKING, Any

from thrforth_dictionary import (
    Dictionary, ForthError, Instruction, NotAVariableName, StackUnderflow, UndefinedVariable,
)

if TYPE_CHECKING:
    from thrforth_runtime import Runtime

# mots qui déplacent l'index du niveau courant : réservés aux mots COMPOSITE
JUMP_WORDS = {"branch", "0branch"}


def display(value: Any) -> str:
    if isinstance(value, bool):
        return "-1" if value else "0"
    return str(value)


def _check_name(name: Any) -> str:
    if not isinstance(name, str):
        raise NotAVariableName(f"not a variable name: {name!r}")
    return name


def _pop_name(rt: "Runtime") -> str:
    return _check_name(rt.ctx.pop())


def prim_print(rt: "Runtime", ins: Instruction) -> Any:
    value = rt.ctx.pop()
    rt.emit(display(value) + " ")
    return value


def prim_newline(rt: "Runtime", ins: Instruction) -> Any:
    rt.emit("\n")
    return True


def prim_fetch(rt: "Runtime", ins: Instruction) -> Any:
    ctx = rt.ctx
    name = _pop_name(rt)
    if name in ctx.variables:
        value = ctx.variables[name]
    elif name in rt.variables:
        value = rt.variables[name]
    else:
        raise UndefinedVariable(name)
    ctx.push(value)
    return value


def prim_store(rt: "Runtime", ins: Instruction) -> Any:
    ctx = rt.ctx
    # rien n'est dépilé tant que le nom et la valeur ne sont pas là
    _check_name(ctx.peek())
    if ctx.depth() < 2:
        raise StackUnderflow("stack underflow")
    name = ctx.pop()
    value = ctx.pop()
    # l'ordre décide si l'écriture crée un état global ou local
    if name in ctx.variables:
        ctx.variables[name] = value
    elif name in rt.variables:
        rt.variables[name] = value
    else:
        ctx.variables[name] = value
    return value


def _jump(rt: "Runtime", ins: Instruction) -> Any:
    ctx = rt.ctx
    if ctx.level == 0 or ctx.atomic_depth > 0:
        raise ForthError("branch outside of a composite word")
    offset = ins.arg
    if not isinstance(offset, int) or isinstance(offset, bool):
        raise ForthError(f"bad branch offset: {offset!r}")
    target = ctx.ip[ctx.level] + offset
    if target < 1:
        raise ForthError(f"branch before start of body: {offset}")
    # le dispatcher avance ensuite l'index d'une unité
    ctx.ip[ctx.level] = target - 1
    return target


def prim_branch(rt: "Runtime", ins: Instruction) -> Any:
    return _jump(rt, ins)


def prim_zbranch(rt: "Runtime", ins: Instruction) -> Any:
    flag = rt.ctx.pop()
    if flag == 0:
        return _jump(rt, ins)
    return flag


def prim_to_r(rt: "Runtime", ins: Instruction) -> Any:
    value = rt.ctx.pop()
    rt.ctx.rpush(value)
    return value


def prim_r_from(rt: "Runtime", ins: Instruction) -> Any:
    value = rt.ctx.rpop()
    rt.ctx.push(value)
    return value


def install_primitives(d: Dictionary) -> None:
    """Installe les primitives dans le vocabulaire courant de d."""
    add = d.add_primitive
    add(".", prim_print, doc="( x -- ) affiche x")
    add("cr", prim_newline, doc="( -- ) retour à la ligne")
    add("=:", prim_fetch, doc="( name -- x ) lit une variable")
    add(":=", prim_store, doc="( x name -- ) écrit une variable")
    add("branch", prim_branch, doc="( -- ) saut relatif")
    add("0branch", prim_zbranch, doc="( flag -- ) saut relatif si zéro")
    add(">r", prim_to_r, doc="( x -- ) R: ( -- x )")
    add("r>", prim_r_from, doc="( -- x ) R: ( x -- )")


####################################################################
# Tests

class TestPrimitives(unittest.TestCase):
    def setUp(self) -> None:
        from thrforth_runtime import Runtime
        self.out = io.StringIO()
        self.err = io.StringIO()
        self.rt = Runtime(out=self.out, err=self.err)
        self.ctx = self.rt.init("t", "cr")
        self.rt.active = self.ctx

    def tearDown(self) -> None:
        self.rt.active = None

    def call(self, name: str, arg: Any = None) -> Any:
        w = self.rt.dict.lookup(name)
        return w.prim(self.rt, Instruction(w.token, arg))

    def test_print_and_newline(self):
        self.ctx.stack.extend(["hello world", 5])
        self.assertEqual(self.call("."), 5)
        self.call(".")
        self.call("cr")
        self.assertEqual(self.out.getvalue(), "5 hello world \n")
        with self.assertRaises(StackUnderflow):
            self.call(".")

    def test_print_flags(self):
        self.ctx.stack.extend([True, False])
        self.call("."); self.call(".")
        self.assertEqual(self.out.getvalue(), "0 -1 ")

    def test_store_creates_local_then_fetch(self):
        self.ctx.stack.extend([7, "x"])
        self.call(":=")
        self.assertEqual(self.ctx.variables, {"x": 7})
        self.assertEqual(self.rt.variables, {})
        self.ctx.push("x")
        self.assertEqual(self.call("=:"), 7)
        self.assertEqual(self.ctx.stack, [7])

    def test_store_prefers_existing_global(self):
        self.rt.variables["g"] = 1
        self.ctx.stack.extend([2, "g"])
        self.call(":=")
        self.assertEqual(self.rt.variables, {"g": 2})
        self.assertEqual(self.ctx.variables, {})

    def test_store_prefers_existing_local_over_global(self):
        self.rt.variables["v"] = "global"
        self.ctx.variables["v"] = "local"
        self.ctx.stack.extend(["new", "v"])
        self.call(":=")
        self.assertEqual(self.ctx.variables["v"], "new")
        self.assertEqual(self.rt.variables["v"], "global")

    def test_fetch_local_shadows_global(self):
        self.rt.variables["v"] = 1
        self.ctx.push("v")
        self.call("=:")
        self.ctx.variables["v"] = 2
        self.ctx.push("v")
        self.call("=:")
        self.assertEqual(self.ctx.stack, [1, 2])

    def test_fetch_failures(self):
        with self.assertRaises(StackUnderflow):
            self.call("=:")
        self.ctx.push(3)
        with self.assertRaises(NotAVariableName):
            self.call("=:")
        self.ctx.push("nope")
        with self.assertRaises(UndefinedVariable):
            self.call("=:")

    def test_store_failures(self):
        with self.assertRaises(StackUnderflow):
            self.call(":=")
        self.ctx.push(3)
        with self.assertRaises(NotAVariableName):
            self.call(":=")
        self.assertEqual(self.ctx.stack, [3])
        self.ctx.stack.clear()
        self.ctx.push("lonely")
        with self.assertRaises(StackUnderflow):
            self.call(":=")
        self.assertEqual(self.ctx.stack, ["lonely"])
        self.assertEqual(self.ctx.variables, {})

    def test_failed_store_leaves_stack_usable(self):
        self.ctx.push("x")
        with self.assertRaises(StackUnderflow):
            self.call(":=")
        self.ctx.stack.insert(0, 7)
        self.assertEqual(self.call(":="), 7)
        self.assertEqual((self.ctx.variables, self.ctx.stack), ({"x": 7}, []))

    def test_return_stack(self):
        self.ctx.push(9)
        self.call(">r")
        self.assertEqual((self.ctx.stack, self.ctx.rstack), ([], [9]))
        self.call("r>")
        self.assertEqual((self.ctx.stack, self.ctx.rstack), ([9], []))
        with self.assertRaises(StackUnderflow):
            self.call("r>")

    def test_branch_outside_composite(self):
        with self.assertRaises(ForthError):
            self.call("branch", 2)

    def test_branch_moves_current_level(self):
        self.ctx.level = 1
        self.ctx.ip[1] = 4
        self.call("branch", -2)
        self.assertEqual(self.ctx.ip[1], 1)
        with self.assertRaises(ForthError):
            self.call("branch", -5)
        self.ctx.push(1)
        self.call("0branch", 3)
        self.assertEqual(self.ctx.ip[1], 1)
        self.ctx.push(0)
        self.call("0branch", 3)
        self.assertEqual(self.ctx.ip[1], 3)


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)

if __name__ == "__main__":
    test_all()
