#!/usr/bin/env python3
# thrforth_dictionary.py
#
# Dictionnaire thrforth :
# - vocabulaires chaînés (prev fixé à la création)
# - mots rangés dans une arène, adressés par handle (token)
# - chaîne prev (ordre de définition) et chaîne hmnym (homonymes)
# - search / create / forget / new_vocabulary
#
from __future__ import annotations
import sys
import unittest
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

# Noms fixes des vocabulaires pré-enregistrés
ROOT_VOCABULARY = "forth"
USER_VOCABULARY = "user"
COMPILER_VOCABULARY = "compiler"


class ForthError(RuntimeError): ...
class StackUnderflow(ForthError): ...
class NotAVariableName(ForthError): ...
class UndefinedVariable(ForthError): ...

class DictError(ForthError): ...
class UndefinedWord(DictError): ...
class DuplicateVocabulary(DictError): ...
class UnknownVocabulary(DictError): ...

# graphe de mots incohérent : erreur de programmation, jamais rattrapée par l'interpréteur
class MalformedWord(RuntimeError): ...


class CodeClass(Enum):
    PRIMITIVE = "PRIMITIVE"
    ATOMIC    = "ATOMIC"
    COMPOSITE = "COMPOSITE"

Token = int


@dataclass(frozen=True)
class Instruction:
    token: Token
    arg: Any = None

    def __repr__(self) -> str:
        if self.arg is None:
            return f"<{self.token}>"
        return f"<{self.token} {self.arg!r}>"


@dataclass(eq=False)
class Word:
    name: str
    code_class: CodeClass
    token: Token
    vocabulary: str
    prim: Optional[Callable[..., Any]] = None
    body: List[Instruction] = field(default_factory=list)
    prev: Optional[Token] = None
    hmnym: Optional[Token] = None
    doc: str = ""

    def __hash__(self) -> int: return hash(self.token)
    def __eq__(self, other: object) -> bool: return isinstance(other, Word) and self.token == other.token
    def is_primary(self) -> bool: return self.code_class is CodeClass.PRIMITIVE
    def is_secondary(self) -> bool: return not self.is_primary()
    def xt(self) -> Token: return self.token


@dataclass
class Vocabulary:
    name: str
    prev: Optional[str] = None
    hmnym: Dict[str, Token] = field(default_factory=dict)
    top: Optional[Token] = None


class Dictionary:
    """
    Arène de mots + table des vocabulaires.

    Deux pointeurs globaux (pas par tâche) :
      - search : vocabulaire où commence la recherche
      - current : vocabulaire qui reçoit les nouvelles définitions
    Un seul acteur à la fois doit modifier le dictionnaire.
    """

    def __init__(self, *, token_start: int = 1) -> None:
        self._next_token: int = token_start
        self._words: Dict[Token, Word] = {}
        self._vocabularies: Dict[str, Vocabulary] = {}
        self._search: Optional[str] = None
        self._current: Optional[str] = None
        # root, user (prolonge root), compiler (jamais chaîné)
        self._register(Vocabulary(ROOT_VOCABULARY))
        self._register(Vocabulary(USER_VOCABULARY, prev=ROOT_VOCABULARY))
        self._register(Vocabulary(COMPILER_VOCABULARY))
        self.use(ROOT_VOCABULARY)

    def _register(self, voc: Vocabulary) -> Vocabulary:
        if voc.name in self._vocabularies: raise DuplicateVocabulary(voc.name)
        self._vocabularies[voc.name] = voc
        return voc

    def _alloc_token(self) -> Token:
        t = self._next_token
        while t in self._words: t += 1
        self._next_token = t + 1
        return t

    # ---- vocabulaires ----
    def new_vocabulary(self, name: str) -> Vocabulary:
        return self._register(Vocabulary(name, prev=self.get_current()))

    def vocabulary(self, name: str) -> Vocabulary:
        voc = self._vocabularies.get(name)
        if voc is None: raise UnknownVocabulary(name)
        return voc

    def vocabulary_names(self) -> List[str]: return list(self._vocabularies)

    def set_search(self, name: str) -> None:
        self.vocabulary(name); self._search = name
    def set_current(self, name: str) -> None:
        self.vocabulary(name); self._current = name
    def use(self, name: str) -> None:
        self.set_search(name); self.set_current(name)
    def get_search(self) -> str:
        if self._search is None: raise DictError("no search vocabulary")
        return self._search
    def get_current(self) -> str:
        if self._current is None: raise DictError("no current vocabulary")
        return self._current

    def search_chain(self) -> List[str]:
        out: List[str] = []
        name: Optional[str] = self.get_search()
        while name is not None:
            out.append(name)
            name = self._vocabularies[name].prev
        return out

    # ---- recherche ----
    def search(self, name: str) -> Optional[Word]:
        for vname in self.search_chain():
            tok = self._vocabularies[vname].hmnym.get(name)
            if tok is not None:
                return self._words[tok]
        return None

    def lookup(self, name: str) -> Word:
        w = self.search(name)
        if w is None: raise UndefinedWord(name)
        return w

    def find_by_token(self, tok: Token) -> Optional[Word]:
        return self._words.get(tok)

    # ---- création ----
    def create(self, name: str, code_class: CodeClass, body: Optional[List[Instruction]] = None,
               prim: Optional[Callable[..., Any]] = None, *, doc: str = "") -> Word:
        voc = self._vocabularies[self.get_current()]
        w = Word(name, code_class, self._alloc_token(), voc.name, prim, list(body or []),
                 prev=voc.top, hmnym=voc.hmnym.get(name), doc=doc)
        self._words[w.token] = w
        voc.top = w.token
        voc.hmnym[name] = w.token
        return w

    def add_primitive(self, name: str, prim: Callable[..., Any], *, doc: str = "") -> Word:
        return self.create(name, CodeClass.PRIMITIVE, prim=prim, doc=doc)

    # ---- oubli ----
    def forget(self, name: str) -> None:
        """
        Oublie `name` ET tout ce qui a été défini après lui dans le
        vocabulaire courant. Pas de recherche dans les vocabulaires parents.
        """
        voc = self._vocabularies[self.get_current()]
        target = voc.hmnym.get(name)
        if target is None:
            return
        tok = voc.top
        while tok is not None:
            w = self._words.pop(tok)
            # l'homonyme précédent redevient visible (toujours défini avant la cible)
            if w.hmnym is not None:
                voc.hmnym[w.name] = w.hmnym
            else:
                voc.hmnym.pop(w.name, None)
            tok = w.prev
            if w.token == target:
                break
        voc.top = tok

    # ---- introspection ----
    def words(self, vocabulary: Optional[str] = None) -> List[Word]:
        """Mots d'un vocabulaire, du plus récent au plus ancien."""
        voc = self.vocabulary(vocabulary or self.get_search())
        out: List[Word] = []
        tok = voc.top
        while tok is not None:
            w = self._words[tok]
            out.append(w)
            tok = w.prev
        return out

    def visible_words(self) -> List[Word]:
        seen = set()
        out: List[Word] = []
        for vname in self.search_chain():
            for w in self.words(vname):
                if w.name not in seen:
                    seen.add(w.name); out.append(w)
        return out

    def token_to_name(self, tok: Token) -> str:
        w = self.find_by_token(tok); return "<unk>" if w is None else w.name

    def disasm(self, w: Word) -> str:
        if w.is_primary(): return f"primitive {w.name}"
        parts = []
        for ins in w.body:
            name = self.token_to_name(ins.token)
            parts.append(name if ins.arg is None else f"{name}({ins.arg!r})")
        kind = "atomic" if w.code_class is CodeClass.ATOMIC else "composite"
        return f": {w.name}  {' '.join(parts)} ;  \\ {kind}"


####################################################################
# Tests

def _nop(rt, ins):
    return True


class TestDictionary(unittest.TestCase):
    def setUp(self) -> None:
        self.d = Dictionary()

    def test_preregistered_vocabularies(self):
        self.assertEqual(self.d.vocabulary_names(), [ROOT_VOCABULARY, USER_VOCABULARY, COMPILER_VOCABULARY])
        self.assertEqual(self.d.get_search(), ROOT_VOCABULARY)
        self.assertEqual(self.d.get_current(), ROOT_VOCABULARY)
        self.assertEqual(self.d.vocabulary(USER_VOCABULARY).prev, ROOT_VOCABULARY)

    def test_compiler_vocabulary_never_on_a_chain(self):
        self.d.use(COMPILER_VOCABULARY)
        self.d.add_primitive("postpone", _nop)
        self.d.use(USER_VOCABULARY)
        self.d.new_vocabulary("app")
        for name in self.d.vocabulary_names():
            self.d.set_search(name)
            if name != COMPILER_VOCABULARY:
                self.assertNotIn(COMPILER_VOCABULARY, self.d.search_chain())
                self.assertIsNone(self.d.search("postpone"))

    def test_search_walks_prev_chain(self):
        dup = self.d.add_primitive("dup", _nop)
        self.d.use(USER_VOCABULARY)
        self.assertIs(self.d.search("dup"), dup)
        self.assertIsNone(self.d.search("swap"))

    def test_lookup_raises_undefined_word(self):
        with self.assertRaises(UndefinedWord):
            self.d.lookup("nope")

    def test_shadowing_and_forget_restores_homonym(self):
        first = self.d.add_primitive("x", _nop)
        second = self.d.add_primitive("x", _nop)
        self.assertIs(self.d.search("x"), second)
        self.assertEqual(second.hmnym, first.token)
        self.assertEqual(second.prev, first.token)
        self.d.forget("x")
        self.assertIs(self.d.search("x"), first)
        self.d.forget("x")
        self.assertIsNone(self.d.search("x"))
        self.assertIsNone(self.d.vocabulary(ROOT_VOCABULARY).top)

    def test_forget_cascade(self):
        before = self.d.add_primitive("before", _nop)
        self.d.add_primitive("a", _nop)
        self.d.add_primitive("b", _nop)
        self.d.add_primitive("c", _nop)
        self.d.use(USER_VOCABULARY)
        other = self.d.add_primitive("b", _nop)
        self.d.use(ROOT_VOCABULARY)
        self.d.forget("a")
        for name in ("a", "b", "c"):
            self.assertIsNone(self.d.search(name))
        self.assertIs(self.d.search("before"), before)
        self.assertEqual(self.d.vocabulary(ROOT_VOCABULARY).top, before.token)
        self.d.set_search(USER_VOCABULARY)
        self.assertIs(self.d.search("b"), other)

    def test_forget_restores_homonym_defined_before_target(self):
        x1 = self.d.add_primitive("x", _nop)
        self.d.add_primitive("a", _nop)
        self.d.add_primitive("x", _nop)
        self.d.forget("a")
        self.assertIs(self.d.search("x"), x1)

    def test_forget_unknown_is_noop_and_local_to_current(self):
        self.d.add_primitive("a", _nop)
        self.d.use(USER_VOCABULARY)
        self.d.forget("a")
        self.d.forget("nothing")
        self.assertIsNotNone(self.d.search("a"))

    def test_new_vocabulary_prev_is_current_and_fixed(self):
        self.d.use(USER_VOCABULARY)
        app = self.d.new_vocabulary("app")
        self.assertEqual(app.prev, USER_VOCABULARY)
        self.d.use(ROOT_VOCABULARY)
        self.d.new_vocabulary("other")
        self.assertEqual(app.prev, USER_VOCABULARY)
        # user gagne des mots après coup : app les voit toujours via sa chaîne
        self.d.use(USER_VOCABULARY)
        late = self.d.add_primitive("late", _nop)
        self.d.set_search("app")
        self.assertEqual(self.d.search_chain(), ["app", USER_VOCABULARY, ROOT_VOCABULARY])
        self.assertIs(self.d.search("late"), late)

    def test_duplicate_vocabulary(self):
        self.d.new_vocabulary("app")
        with self.assertRaises(DuplicateVocabulary):
            self.d.new_vocabulary("app")
        with self.assertRaises(DuplicateVocabulary):
            self.d.new_vocabulary(USER_VOCABULARY)

    def test_unknown_vocabulary(self):
        with self.assertRaises(UnknownVocabulary):
            self.d.use("missing")

    def test_words_and_disasm(self):
        a = self.d.add_primitive("a", _nop)
        b = self.d.create("b", CodeClass.ATOMIC, [Instruction(a.token), Instruction(a.token, 2)])
        self.assertEqual([w.name for w in self.d.words()], ["b", "a"])
        self.assertEqual(self.d.disasm(b), ": b  a a(2) ;  \\ atomic")
        self.assertEqual(self.d.disasm(a), "primitive a")


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)

if __name__ == "__main__":
    test_all()
