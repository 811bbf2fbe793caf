#!/usr/bin/env python3
"""
rforth.py — a small Forth-like language engine.

A data stack, a loop control stack, and a dictionary of words.

Architecture:
  - Tokenizer: whitespace-delimited words, \\ and ( ) comments stripped
  - Outer interpreter: look up each token, execute it or compile it
  - Inner interpreter: run compiled instruction lists with an explicit IP
  - Immediate words run at compile time to emit/backpatch control flow
  - Calls are bound when compiled; redefining a word never changes
    bodies that were compiled before the redefinition
  - Inside its own definition a new word's name refers to itself; a name
    that already exists refers to the older word (use RECURSE then)

Instruction set:
  ('LIT',     n)     push integer n
  ('CALL',    word)  run a Word resolved at compile time
  ('BRANCH',  addr)  jump to absolute addr
  ('0BRANCH', addr)  pop flag, jump if it is 0
  ('DO',      exit)  pop (limit, start); jump to exit if start >= limit,
                     otherwise push a loop frame
  ('LOOP',    back)  step +1; jump to back while index < limit
  ('I',)             push current loop index

Word names are case-insensitive: they are stored and looked up in upper case.
"""

import argparse
import logging
import string
import sys
from typing import Callable, Iterator

log = logging.getLogger('rforth')

CELL_BITS = 64
CELL_MIN = -(1 << (CELL_BITS - 1))
CELL_MAX = (1 << (CELL_BITS - 1)) - 1

# Each Forth-level call costs two host frames.
DEFAULT_MAX_DEPTH = 300

TRUE, FALSE = -1, 0


# ── Errors ────────────────────────────────────────────────────────────────────

class ForthError(Exception):
    pass


class WordNotFound(ForthError):
    def __init__(self, name):
        super().__init__(f'Undefined: {name}')
        self.name = name


class StackUnderflow(ForthError):
    pass


class StackOverflow(ForthError):
    pass


class DivisionByZero(ForthError):
    pass


class IntegerOverflow(ForthError):
    pass


class UnbalancedControlFlow(ForthError):
    pass


class CompileOnlyWord(UnbalancedControlFlow):
    """A control or compiling word was used outside a definition."""

    def __init__(self, name):
        super().__init__(f'{name} is only valid inside a definition')
        self.name = name


class LoopIndexOutsideLoop(ForthError):
    pass


class MalformedDefinition(ForthError):
    pass


class MalformedComment(ForthError):
    pass


# ── Tokenizer ─────────────────────────────────────────────────────────────────

WHITESPACE = ' \t\r\n\f\v'
DELIMITERS = WHITESPACE + '(\\'


class Tokenizer:
    """Iterable over the words of `source`.

    Every iteration starts again from the beginning of the text, so the
    same Tokenizer can be walked more than once. `\\` drops the rest of
    its line, `(` drops everything up to the next `)`. Parenthesis
    comments do not nest; one with no closing `)` raises MalformedComment
    when the tokenizer reaches it.
    """

    def __init__(self, source: str):
        self.source = source

    def __iter__(self) -> Iterator[str]:
        src = self.source
        i, n = 0, len(src)
        while i < n:
            while i < n and src[i] in WHITESPACE:
                i += 1
            if i >= n:
                break
            if src[i] == '(':
                j = src.find(')', i + 1)
                if j < 0:
                    raise MalformedComment('Unterminated ( comment')
                i = j + 1
                continue
            if src[i] == '\\':
                j = src.find('\n', i)
                i = (j + 1) if j >= 0 else n
                continue
            j = i
            while j < n and src[j] not in DELIMITERS:
                j += 1
            yield src[i:j]
            i = j

    def __repr__(self):
        return f'Tokenizer({self.source!r})'


def tokenize(src: str) -> Tokenizer:
    return Tokenizer(src)


def parse_num(s: str) -> int:
    neg = s.startswith('-') and len(s) > 1
    body = s[1:] if neg else s
    if body.startswith(('0x', '0X', '$')):
        digits = body[1:] if body[0] == '$' else body[2:]
        if not digits or not all(c in string.hexdigits for c in digits):
            raise ValueError(f'not a number: {s}')
        n = int(digits, 16)
    elif body.isdigit():
        n = int(body, 10)
    else:
        raise ValueError(f'not a number: {s}')
    return -n if neg else n


def cell(n: int) -> int:
    if not CELL_MIN <= n <= CELL_MAX:
        raise IntegerOverflow(f'Integer overflow: {n} does not fit in {CELL_BITS} bits')
    return n


# ── Stacks ────────────────────────────────────────────────────────────────────

class Stack(list):
    """LIFO stack that raises `underflow` instead of IndexError."""

    underflow = StackUnderflow
    message = 'Stack underflow'

    def push(self, x):
        self.append(x)

    def pop(self):
        if not self:
            raise self.underflow(self.message)
        return super().pop()

    def peek(self):
        if not self:
            raise self.underflow(self.message)
        return self[-1]

    def need(self, n):
        if len(self) < n:
            raise self.underflow(self.message)


class LoopStack(Stack):
    """Frames of [index, limit] for the active DO ... LOOP nests."""

    underflow = LoopIndexOutsideLoop
    message = 'I outside loop'


# ── Dictionary ────────────────────────────────────────────────────────────────

class Word:
    __slots__ = ('name', 'fn', 'code', 'immediate')

    def __init__(self, name, fn=None, code=None, immediate=False):
        self.name = name
        self.fn = fn
        self.code = code
        self.immediate = immediate

    @property
    def kind(self):
        return 'builtin' if self.fn is not None else 'compiled'

    def __repr__(self):
        imm = ' immediate' if self.immediate else ''
        return f'<Word {self.name} {self.kind}{imm}>'


class Dictionary:
    """Ordered word list. Later entries shadow earlier ones with the same name."""

    def __init__(self):
        self._entries: list = []

    def __len__(self):
        return len(self._entries)

    def __contains__(self, name):
        return self.find(name) is not None

    def add(self, word: Word) -> Word:
        self._entries.append(word)
        return word

    def define(self, name, fn=None, code=None, immediate=False) -> Word:
        return self.add(Word(name.upper(), fn, code, immediate))

    def find(self, name) -> Word | None:
        name = name.upper()
        for word in reversed(self._entries):
            if word.name == name:
                return word
        return None

    def lookup(self, name) -> Word:
        word = self.find(name)
        if word is None:
            raise WordNotFound(name)
        return word

    @property
    def latest(self) -> Word | None:
        return self._entries[-1] if self._entries else None

    def names(self) -> list:
        seen, out = set(), []
        for word in reversed(self._entries):
            if word.name not in seen:
                seen.add(word.name)
                out.append(word.name)
        return out


# ── Interpreter ───────────────────────────────────────────────────────────────

class Forth:
    """Engine context: dictionary, data stack, loop stack, compile state.

    Output goes to `emit` when given. Without it, text is appended to
    `out`, which `interpret` clears on each call; hosts calling `feed`
    directly clear `out` themselves.
    """

    def __init__(self, emit: Callable[[str], None] | None = None,
                 max_depth: int = DEFAULT_MAX_DEPTH):
        self.ds = Stack()
        self.rs = LoopStack()
        self.words = Dictionary()
        self.max_depth = max_depth
        self._depth = 0
        self._tokens: Iterator[str] | None = None
        self._word: Word | None = None     # definition being compiled
        self._code: list | None = None
        self._ctrl: list = []
        self.out: list = []
        self._sink = emit
        self._define_builtins()

    @property
    def stack(self):
        return self.ds

    @property
    def compiling(self):
        return self._word is not None

    # ── I/O ───────────────────────────────────────────────────────────────────

    def _emit(self, s):
        if self._sink is not None:
            self._sink(str(s))
        else:
            self.out.append(str(s))

    # ── Public ────────────────────────────────────────────────────────────────

    def feed(self, line: str) -> None:
        """Tokenize and run one unit of input against the engine state.

        Raises a ForthError subclass on failure. The engine is back in
        interpret mode with no open definition when that happens.
        """
        try:
            self._outer(list(tokenize(line)))
        except ForthError as e:
            log.debug('aborted line %r: %s', line, e)
            self._reset()
            raise
        except RecursionError:
            log.debug('aborted line %r: host recursion limit', line)
            self._reset()
            raise StackOverflow('Return stack overflow: host recursion limit reached') from None

    def interpret(self, source: str) -> str:
        self.out = []
        sink, self._sink = self._sink, None
        try:
            self.feed(source)
            if not self.compiling:
                self.out.append(' ok')
        except ForthError as e:
            self.out.append(f'\n Error: {e}')
        finally:
            self._sink = sink
        return ''.join(self.out)

    def _reset(self):
        if self._word is not None:
            log.debug('discarding partial definition of %s', self._word.name)
        self._word = None
        self._code = None
        self._ctrl = []
        self._tokens = None
        self._depth = 0
        self.rs.clear()

    # ── Outer interpreter ─────────────────────────────────────────────────────

    def _next_token(self):
        return next(self._tokens, None)

    def _outer(self, tokens: list):
        self._tokens = iter(tokens)
        for tok in self._tokens:
            if tok == ':':
                self._start_definition()
            elif self.compiling:
                self._compile_token(tok)
            else:
                self._interpret_token(tok)
        self._tokens = None

    def _interpret_token(self, tok):
        defn = self.words.find(tok)
        if defn:
            self._exec_defn(defn)
            return
        try:
            self.ds.push(cell(parse_num(tok)))
        except ValueError:
            raise WordNotFound(tok) from None

    def _compile_token(self, tok):
        defn = self.words.find(tok)
        if defn is None and tok.upper() == self._word.name:
            defn = self._word    # new word calling itself
        if defn and defn.immediate:
            self._exec_defn(defn)
        elif defn:
            self._code.append(('CALL', defn))
        else:
            try:
                self._code.append(('LIT', cell(parse_num(tok))))
            except ValueError:
                raise WordNotFound(tok) from None

    def _start_definition(self):
        if self.compiling:
            raise MalformedDefinition(f'Nested : inside {self._word.name}')
        name = self._next_token()
        if name is None:
            raise MalformedDefinition(': needs a name')
        try:
            parse_num(name)
        except ValueError:
            pass
        else:
            raise MalformedDefinition(f': cannot define a number: {name}')
        self._word = Word(name.upper(), code=[])
        self._code = self._word.code
        self._ctrl = []

    def _end_definition(self):
        if self._ctrl:
            kind = self._ctrl[-1][0]
            raise UnbalancedControlFlow(f'{kind} without matching end in {self._word.name}')
        word = self.words.add(self._word)
        log.debug('defined %s (%d instructions)', word.name, len(word.code))
        self._word = None
        self._code = None

    # ── Execute definition ────────────────────────────────────────────────────

    def _exec_defn(self, defn: Word):
        if defn.fn is not None:
            defn.fn()
            return
        if self._depth >= self.max_depth:
            raise StackOverflow(f'Return stack overflow in {defn.name}')
        self._depth += 1
        try:
            self._exec_code(defn.code)
        finally:
            self._depth -= 1

    # ── Inner interpreter ─────────────────────────────────────────────────────

    def _exec_code(self, code: list):
        ip = 0
        while ip < len(code):
            instr = code[ip]
            op    = instr[0]

            if op == 'LIT':
                self.ds.push(instr[1])

            elif op == 'CALL':
                self._exec_defn(instr[1])

            elif op == 'BRANCH':
                ip = instr[1]; continue

            elif op == '0BRANCH':
                if self.ds.pop() == 0:
                    ip = instr[1]; continue

            elif op == 'DO':
                start = self.ds.pop()
                limit = self.ds.pop()
                if start >= limit:
                    ip = instr[1]; continue
                self.rs.push([start, limit])

            elif op == 'LOOP':
                f = self.rs.peek()
                f[0] += 1
                if f[0] < f[1]:
                    ip = instr[1]; continue
                self.rs.pop()

            elif op == 'I':
                self.ds.push(self.rs.peek()[0])

            else:
                raise ForthError(f'Bad instruction: {op}')

            ip += 1

    # ── Compile-time helpers ──────────────────────────────────────────────────

    def _compile_only(self, name):
        if not self.compiling:
            raise CompileOnlyWord(name)

    def _def(self, name, fn, imm=False):
        self.words.define(name, fn, immediate=imm)

    # ── Built-ins ─────────────────────────────────────────────────────────────

    def _define_builtins(self):
        d = self

        # ── Definition words ─────────────────────────────────────────────────
        def w_semi():
            if not d.compiling:
                raise MalformedDefinition('; outside a definition')
            d._end_definition()
        d._def(';', w_semi, imm=True)

        def w_immediate():
            word = d.words.latest
            if word is None or word.kind != 'compiled':
                raise MalformedDefinition('IMMEDIATE: no definition to mark')
            word.immediate = True
            log.debug('%s marked immediate', word.name)
        d._def('IMMEDIATE', w_immediate)

        def w_recurse():
            d._compile_only('RECURSE')
            d._code.append(('CALL', d._word))
        d._def('RECURSE', w_recurse, imm=True)

        def w_literal():
            d._compile_only('LITERAL')
            d._code.append(('LIT', d.ds.pop()))
        d._def('LITERAL', w_literal, imm=True)

        # ── Control flow (immediate words) ───────────────────────────────────
        def w_if():
            d._compile_only('IF')
            d._code.append(('0BRANCH', None))
            d._ctrl.append(('IF', len(d._code) - 1))
        d._def('IF', w_if, imm=True)

        def w_else():
            d._compile_only('ELSE')
            if not d._ctrl or d._ctrl[-1][0] != 'IF':
                raise UnbalancedControlFlow('ELSE without IF')
            _, ia = d._ctrl.pop()
            d._code.append(('BRANCH', None))
            ea = len(d._code) - 1
            d._code[ia] = ('0BRANCH', len(d._code))
            d._ctrl.append(('ELSE', ea))
        d._def('ELSE', w_else, imm=True)

        def w_then():
            d._compile_only('THEN')
            if not d._ctrl or d._ctrl[-1][0] not in ('IF', 'ELSE'):
                raise UnbalancedControlFlow('THEN without IF/ELSE')
            kind, addr = d._ctrl.pop()
            op = '0BRANCH' if kind == 'IF' else 'BRANCH'
            d._code[addr] = (op, len(d._code))
        d._def('THEN', w_then, imm=True)

        def w_do():
            d._compile_only('DO')
            d._code.append(('DO', None))
            d._ctrl.append(('DO', len(d._code) - 1))
        d._def('DO', w_do, imm=True)

        def w_loop():
            d._compile_only('LOOP')
            if not d._ctrl or d._ctrl[-1][0] != 'DO':
                raise UnbalancedControlFlow('LOOP without DO')
            _, da = d._ctrl.pop()
            d._code.append(('LOOP', da + 1))
            d._code[da] = ('DO', len(d._code))
        d._def('LOOP', w_loop, imm=True)

        # I compiles when compiling and runs directly at the top level.
        def w_i():
            if d.compiling:
                d._code.append(('I',))
            else:
                d.ds.push(d.rs.peek()[0])
        d._def('I', w_i, imm=True)

        # ── Arithmetic ───────────────────────────────────────────────────────
        def _divmod(a, b):
            if b == 0:
                raise DivisionByZero('Division by zero')
            q = abs(a) // abs(b)
            if (a < 0) != (b < 0):
                q = -q
            return q, a - q * b     # truncate toward zero

        def _binop(op):
            def fn():
                b = d.ds.pop(); a = d.ds.pop()
                if op == '+':   d.ds.push(cell(a + b))
                elif op == '-': d.ds.push(cell(a - b))
                elif op == '*': d.ds.push(cell(a * b))
                elif op == '/':   d.ds.push(cell(_divmod(a, b)[0]))
                elif op == 'MOD': d.ds.push(_divmod(a, b)[1])
            return fn

        for op in ('+', '-', '*', '/', 'MOD'):
            d._def(op, _binop(op))

        # ── Comparison (true = -1, false = 0) ────────────────────────────────
        def _cmp(op):
            def fn():
                b = d.ds.pop(); a = d.ds.pop()
                res = {'=': a == b, '<': a < b, '>': a > b}[op]
                d.ds.push(TRUE if res else FALSE)
            return fn
        for op in ('=', '<', '>'):
            d._def(op, _cmp(op))

        # ── Logic ─────────────────────────────────────────────────────────────
        d._def('AND', lambda: (lambda b, a: d.ds.push(a & b))(d.ds.pop(), d.ds.pop()))
        d._def('OR',  lambda: (lambda b, a: d.ds.push(a | b))(d.ds.pop(), d.ds.pop()))
        d._def('NOT', lambda: d.ds.push(~d.ds.pop()))

        # ── Stack manipulation ────────────────────────────────────────────────
        def w_dup():    d.ds.push(d.ds.peek())
        def w_drop():   d.ds.pop()
        def w_swap():
            d.ds.need(2); d.ds[-1], d.ds[-2] = d.ds[-2], d.ds[-1]
        def w_over():
            d.ds.need(2); d.ds.push(d.ds[-2])
        def w_rot():
            d.ds.need(3); d.ds.push(list.pop(d.ds, -3))
        def w_nrot():
            d.ds.need(3); d.ds.insert(-2, list.pop(d.ds))
        def w_qdup():
            if d.ds.peek() != 0: d.ds.push(d.ds[-1])
        def w_2dup():
            d.ds.need(2); d.ds.extend([d.ds[-2], d.ds[-1]])
        def w_2drop():
            d.ds.need(2); del d.ds[-2:]
        def w_2swap():
            d.ds.need(4)
            a, b, c, e = d.ds[-4:]
            d.ds[-4:] = [c, e, a, b]
        def w_2over():
            d.ds.need(4); d.ds.extend([d.ds[-4], d.ds[-3]])
        d._def('DUP',   w_dup)
        d._def('DROP',  w_drop)
        d._def('SWAP',  w_swap)
        d._def('OVER',  w_over)
        d._def('ROT',   w_rot)
        d._def('-ROT',  w_nrot)
        d._def('?DUP',  w_qdup)
        d._def('2DUP',  w_2dup)
        d._def('2DROP', w_2drop)
        d._def('2SWAP', w_2swap)
        d._def('2OVER', w_2over)

        # ── Output ────────────────────────────────────────────────────────────
        d._def('.',  lambda: d._emit(str(d.ds.pop()) + ' '))
        d._def('CR', lambda: d._emit('\n'))
        d._def('.S', lambda: d._emit('<' + str(len(d.ds)) + '> ' +
                                     ''.join(str(x) + ' ' for x in d.ds)))

        # ── Misc ──────────────────────────────────────────────────────────────
        d._def('WORDS', lambda: d._emit('  '.join(d.words.names())))


# ── Tests ─────────────────────────────────────────────────────────────────────

CASES = [
    # Arithmetic
    ('1 2 + .',               '3 '),
    ('10 3 - .',              '7 '),
    ('6 7 * .',               '42 '),
    ('20 4 / .',              '5 '),
    ('-7 2 / .',              '-3 '),
    ('17 5 MOD .',            '2 '),
    ('-7 2 MOD .',            '-1 '),
    ('10 5 - 3 / 2 mod .',    '1 '),

    # Stack ops
    ('3 DUP . .',             '3 3 '),
    ('3 4 SWAP . .',          '3 4 '),
    ('1 2 OVER . . .',        '1 2 1 '),
    ('1 2 3 ROT . . .',       '1 3 2 '),
    ('1 2 3 -ROT . . .',      '2 1 3 '),
    ('0 ?DUP .S',             '<1> 0 '),
    ('1 2 3 4 2SWAP .S',      '<4> 3 4 1 2 '),
    ('1 2 3 4 2OVER .S',      '<6> 1 2 3 4 1 2 '),
    ('1 2 2DUP .S',           '<4> 1 2 1 2 '),
    ('1 2 3 2DROP .S',        '<1> 1 '),

    # Comparison
    ('3 3 = .',               '-1 '),
    ('3 4 = .',               '0 '),
    ('3 4 < .',               '-1 '),
    ('4 3 > .',               '-1 '),

    # Logic
    ('-1 0 AND .',            '0 '),
    ('0 -1 OR .',             '-1 '),
    ('0 NOT .',               '-1 '),

    # Comments
    ('1 ( two ) 3 + .',       '4 '),
    ('5 . \\ ignored 6 .',    '5 '),

    # User-defined words
    (': SQUARE DUP * ; 5 SQUARE .',        '25 '),
    (': double 2 * ; 6 DOUBLE .',          '12 '),

    # IF/ELSE/THEN
    (': SIGN 0 > IF 1 ELSE -1 THEN ; 5 SIGN .',  '1 '),
    (': SIGN 0 > IF 1 ELSE -1 THEN ; -3 SIGN .', '-1 '),
    (': MYABS DUP 0 < IF 0 SWAP - THEN ; -7 MYABS .', '7 '),

    # DO/LOOP
    (': SUM 0 5 0 DO I + LOOP . ; SUM',     '10 '),
    (': SQUARES 4 1 DO I DUP * . LOOP ; SQUARES', '1 4 9 '),
    (': NONE 0 5 DO I . LOOP ; NONE',       ''),
    (': GRID 2 0 DO 3 0 DO I . LOOP LOOP ; GRID', '0 1 2 0 1 2 '),

    # Recursion
    (': FACT DUP 1 > IF DUP 1 - FACT * THEN ; 5 FACT .',     '120 '),
    (': FACT DUP 1 > IF DUP 1 - RECURSE * THEN ; 10 FACT .', '3628800 '),
    (': FIB DUP 2 < IF ELSE DUP 1 - FIB SWAP 2 - FIB + THEN ; 10 FIB .', '55 '),
    (': GCD DUP 0 = IF DROP ELSE SWAP OVER MOD GCD THEN ; 48 18 GCD .', '6 '),

    # Immediate words
    (': FIVE 5 ; IMMEDIATE : TEN FIVE LITERAL 2 * ; TEN .', '10 '),
]


def run_tests():
    passed = 0
    failures = []

    for src, expected in CASES:
        f = Forth()
        result = f.interpret(src)
        r = result.rstrip()
        if r.endswith(' ok'):
            r = r[:-3].rstrip()
        elif r == 'ok':
            r = ''

        exp = expected.rstrip()
        if r == exp:
            passed += 1
        else:
            failures.append((src[:60], repr(exp), repr(r)))

    print(f'Tests: {passed}/{len(CASES)} passed')
    for src, exp, got in failures:
        print(f'  FAIL: {src}')
        print(f'    exp: {exp}')
        print(f'    got: {got}')
    return passed, len(CASES)


# ── Interactive REPL ──────────────────────────────────────────────────────────

def repl(max_depth=DEFAULT_MAX_DEPTH):
    f = Forth(max_depth=max_depth)
    print('rforth  —  Ctrl-D to exit, WORDS to list vocabulary')
    while True:
        try:
            prompt = '    ' if f.compiling else 'ok> '
            line = input(prompt)
            if not line.strip():
                continue
            out = f.interpret(line)
            if out:
                print(out)
        except EOFError:
            break
        except KeyboardInterrupt:
            print('\nInterrupted — stack and definitions preserved')
            f._reset()


def main(argv=None):
    parser = argparse.ArgumentParser(prog='rforth', description='Forth-like stack language')
    parser.add_argument('--test', action='store_true', help='run the built-in self checks')
    parser.add_argument('-v', '--verbose', action='store_true', help='log at DEBUG level')
    parser.add_argument('--max-depth', type=int, default=DEFAULT_MAX_DEPTH,
                        help='maximum nesting of word calls')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(name)s: %(levelname)s: %(message)s')

    if args.test:
        p, t = run_tests()
        return 0 if p == t else 1
    repl(args.max_depth)
    return 0


if __name__ == '__main__':
    sys.exit(main())
