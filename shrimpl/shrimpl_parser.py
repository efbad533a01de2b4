"""
Recursive-descent parser producing the Shrimpl AST.

Grammar (declarations):

    Program  := ServerDecl? (Import | FunctionDef | ClassDef | ModelDef
                             | EndpointDecl | SecretDecl | TestDecl)*

Every body is a single expression, written either inline after ':' or as
the only line of an indented block. Expression precedence, tightest first:
primary / call / method call / unary minus, '* /', '+ -', comparisons,
'and', 'or'. `if`, `repeat` and `try` are recognized by their keyword.
"""

from typing import Any, Dict, List, Optional, Tuple

from shrimpl.shrimpl_lexer import (
    tokenize, Token, ParseError, LexError,
    NUMBER, STRING, IDENT, NEWLINE, INDENT, DEDENT, EOF,
)
from shrimpl.shrimpl_datatypes import (
    Expr, NumberLit, StringLit, BoolLit, JsonLit, Var, Binary, Call, MethodCall,
    If, Repeat, ListLit, MapLit, Try,
    ServerDecl, ImportDecl, FunctionDef, MethodDef, ClassDef, FieldDef, ModelDef,
    EndpointDecl, SecretDecl, TestDecl, Program,
)

HTTP_METHODS = ("GET", "POST")

COMPARISON_OPS = ("==", "!=", "<", "<=", ">", ">=")

# Tokens that may begin an expression; used to reject empty bodies early.
_BLOCK_KEYWORDS = ("if", "repeat", "try")


class Parser:
    """Parses a token list into a Program. Non-recovering: the first error raises ParseError."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.last: Optional[Token] = None

    # --- token helpers ---

    def peek(self, k: int = 0) -> Token:
        i = min(self.pos + k, len(self.tokens) - 1)
        return self.tokens[i]

    def check(self, kind: str) -> bool:
        return self.peek().kind == kind

    def advance(self) -> Token:
        tok = self.peek()
        if tok.kind != EOF:
            self.pos += 1
        self.last = tok
        return tok

    def accept(self, kind: str) -> Optional[Token]:
        if self.check(kind):
            return self.advance()
        return None

    def expect(self, kind: str, context: str = "") -> Token:
        tok = self.peek()
        if tok.kind != kind:
            where = f" {context}" if context else ""
            raise self.error(f"Expected {self._describe_kind(kind)}{where}, found {self._describe(tok)}", tok)
        return self.advance()

    def error(self, message: str, tok: Optional[Token] = None) -> ParseError:
        tok = tok or self.peek()
        return ParseError(message, tok.line, tok.column)

    @staticmethod
    def _describe_kind(kind: str) -> str:
        match kind:
            case "NEWLINE":
                return "end of line"
            case "INDENT":
                return "an indented block"
            case "DEDENT":
                return "end of block"
            case "IDENT":
                return "a name"
            case "STRING":
                return "a string"
            case "NUMBER":
                return "a number"
            case "EOF":
                return "end of file"
            case _:
                return f"'{kind}'"

    def _describe(self, tok: Token) -> str:
        if tok.kind in (NEWLINE, INDENT, DEDENT, EOF):
            return self._describe_kind(tok.kind)
        return f"'{tok.text}'"

    def skip_newlines(self):
        while self.accept(NEWLINE):
            pass

    def end_of_line(self):
        """Finishes a logical line after a complete expression or declaration.

        An expression that ended with an indented block has already consumed
        its line structure, so only a NEWLINE (or nothing, at a block edge)
        may follow.
        """
        if self.accept(NEWLINE):
            return
        if self.check(EOF) or self.check(DEDENT) or (self.last is not None and self.last.kind == DEDENT):
            return
        raise self.error(f"Unexpected tokens after end of expression: {self._describe(self.peek())}")

    # =================================================================
    # Declarations
    # =================================================================

    def parse_program(self) -> Program:
        decls = []
        seen_server: Optional[ServerDecl] = None
        seen_endpoint = False
        functions: Dict[str, FunctionDef] = {}
        classes: Dict[str, ClassDef] = {}
        models: Dict[str, ModelDef] = {}

        self.skip_newlines()
        while not self.check(EOF):
            tok = self.peek()
            match tok.kind:
                case "server":
                    if seen_server is not None:
                        raise self.error("only one 'server' declaration is allowed", tok)
                    if seen_endpoint:
                        raise self.error("'server' declaration must precede all endpoints", tok)
                    seen_server = self.parse_server()
                    decls.append(seen_server)
                case "import":
                    decls.append(self.parse_import())
                case "func":
                    fn = self.parse_function()
                    if fn.name in functions:
                        raise self.error(f"function '{fn.name}' already defined", tok)
                    functions[fn.name] = fn
                    decls.append(fn)
                case "class":
                    cls = self.parse_class()
                    if cls.name in classes:
                        raise self.error(f"class '{cls.name}' already defined", tok)
                    classes[cls.name] = cls
                    decls.append(cls)
                case "model":
                    model = self.parse_model()
                    if model.name in models:
                        raise self.error(f"model '{model.name}' already defined", tok)
                    models[model.name] = model
                    decls.append(model)
                case "endpoint":
                    decls.append(self.parse_endpoint())
                    seen_endpoint = True
                case "secret":
                    decls.append(self.parse_secret())
                case "test":
                    decls.append(self.parse_test())
                case "INDENT":
                    raise self.error("unexpected indentation", tok)
                case _:
                    raise self.error(
                        "unrecognized statement (expected 'server', 'endpoint', 'func', "
                        "'class', 'model', 'import', 'secret', or 'test')",
                        tok,
                    )
            self.skip_newlines()
        return Program.from_declarations(decls)

    def parse_server(self) -> ServerDecl:
        start = self.expect("server")
        port_tok = self.expect(NUMBER, "after 'server'")
        port = port_tok.value
        if not float(port).is_integer() or not (0 <= port <= 65535):
            raise self.error(
                f"invalid port number '{port_tok.text}'; expected an integer between 0 and 65535",
                port_tok,
            )
        tls = False
        if self.check(IDENT) and self.peek().text == "tls":
            self.advance()
            tls = True
        self.end_of_line()
        return ServerDecl(int(port), tls, line=start.line, column=start.column)

    def parse_import(self) -> ImportDecl:
        start = self.expect("import")
        path = self.expect(STRING, "after 'import'")
        self.end_of_line()
        return ImportDecl(path.value, line=start.line, column=start.column)

    def parse_params(self) -> Tuple[str, ...]:
        self.expect("(", "to open the parameter list")
        params: List[str] = []
        if not self.check(")"):
            while True:
                name = self.expect(IDENT, "in parameter list")
                if name.text in params:
                    raise self.error(f"duplicate parameter '{name.text}'", name)
                params.append(name.text)
                if not self.accept(","):
                    break
        self.expect(")", "to close the parameter list")
        return tuple(params)

    def parse_function(self) -> FunctionDef:
        start = self.expect("func")
        name = self.expect(IDENT, "after 'func'")
        params = self.parse_params()
        self.expect(":", "after parameter list")
        body = self.parse_body()
        self.end_of_line()
        return FunctionDef(name.text, params, body, line=start.line, column=start.column)

    def parse_class(self) -> ClassDef:
        start = self.expect("class")
        name = self.expect(IDENT, "after 'class'")
        self.expect(":", "after class name")
        self.expect(NEWLINE, "after 'class ...:'")
        self.expect(INDENT, "for class methods")
        methods: List[MethodDef] = []
        seen = set()
        while not self.check(DEDENT) and not self.check(EOF):
            mtok = self.expect(IDENT, "as method name")
            if mtok.text in seen:
                raise self.error(f"method '{mtok.text}' already defined in class '{name.text}'", mtok)
            params = self.parse_params()
            self.expect(":", "after method parameter list")
            body = self.parse_body()
            self.end_of_line()
            seen.add(mtok.text)
            methods.append(MethodDef(mtok.text, params, body, line=mtok.line, column=mtok.column))
        self.expect(DEDENT, "to end class body")
        return ClassDef(name.text, tuple(methods), line=start.line, column=start.column)

    def parse_model(self) -> ModelDef:
        start = self.expect("model")
        name = self.expect(IDENT, "after 'model'")
        self.expect(":", "after model name")
        self.expect(NEWLINE, "after 'model ...:'")
        self.expect(INDENT, "for model fields")
        fields: List[FieldDef] = []
        seen = set()
        while not self.check(DEDENT) and not self.check(EOF):
            ftok = self.expect(IDENT, "as field name")
            if ftok.text in seen:
                raise self.error(f"field '{ftok.text}' already defined in model '{name.text}'", ftok)
            optional = self.accept("?") is not None
            self.expect(":", "after field name")
            type_tok = self.expect(IDENT, "as field type")
            primary_key = False
            if self.check(IDENT) and self.peek().text == "pk":
                self.advance()
                primary_key = True
            self.expect(NEWLINE, "after field declaration")
            seen.add(ftok.text)
            fields.append(FieldDef(ftok.text, type_tok.text, optional, primary_key, line=ftok.line, column=ftok.column))
        self.expect(DEDENT, "to end model body")
        return ModelDef(name.text, tuple(fields), line=start.line, column=start.column)

    def parse_endpoint(self) -> EndpointDecl:
        start = self.expect("endpoint")
        method = self.peek()
        if method.kind not in HTTP_METHODS:
            raise self.error(
                f"unsupported method {self._describe(method)}; only GET and POST are supported",
                method,
            )
        self.advance()
        path = self.expect(STRING, "for endpoint path")
        self.expect(":", "after path in endpoint declaration")
        body = self.parse_body()
        self.end_of_line()
        return EndpointDecl(method.kind, path.value, body, line=start.line, column=start.column)

    def parse_secret(self) -> SecretDecl:
        start = self.expect("secret")
        name = self.expect(IDENT, "after 'secret'")
        self.expect("=", "after secret name")
        key = self.expect(STRING, "for secret key")
        self.end_of_line()
        return SecretDecl(name.text, key.value, line=start.line, column=start.column)

    def parse_test(self) -> TestDecl:
        start = self.expect("test")
        name = self.expect(STRING, "for test name")
        self.expect(":", "after test name")
        self.expect(NEWLINE, "after 'test ...:'")
        self.expect(INDENT, "for test assertions")
        assertions: List[Expr] = []
        while not self.check(DEDENT) and not self.check(EOF):
            assertions.append(self.parse_expr())
            self.end_of_line()
        self.expect(DEDENT, "to end test body")
        return TestDecl(name.value, tuple(assertions), line=start.line, column=start.column)

    # =================================================================
    # Bodies
    # =================================================================

    def parse_body(self) -> Expr:
        """Parses a body after ':'; inline and next-line forms give the same tree."""
        if not self.accept(NEWLINE):
            if self.check(EOF) or self.check(DEDENT):
                raise self.error("missing body expression after ':'")
            return self.parse_expr()
        if not self.check(INDENT):
            raise self.error("expected an indented body expression after ':'")
        self.advance()
        expr = self.parse_expr()
        self.end_of_line()
        if not self.check(DEDENT):
            raise self.error(
                f"Unexpected tokens after end of expression: {self._describe(self.peek())}; "
                "a body holds exactly one expression"
            )
        self.advance()
        return expr

    def _continues_with(self, keyword: str) -> bool:
        """True when the next clause keyword follows, possibly on the next line."""
        if self.check(keyword):
            return True
        if self.check(NEWLINE) and self.peek(1).kind == keyword:
            self.advance()
            return True
        return False

    # =================================================================
    # Expressions
    # =================================================================

    def parse_expr(self) -> Expr:
        match self.peek().kind:
            case "if":
                return self.parse_if()
            case "repeat":
                return self.parse_repeat()
            case "try":
                return self.parse_try()
            case _:
                return self.parse_or()

    def parse_if(self) -> If:
        start = self.expect("if")
        cond = self.parse_or()
        self.expect(":", "after if condition")
        branches = [(cond, self.parse_body())]
        else_body = None
        while self._continues_with("elif"):
            self.advance()
            cond = self.parse_or()
            self.expect(":", "after elif condition")
            branches.append((cond, self.parse_body()))
        if self._continues_with("else"):
            self.advance()
            self.expect(":", "after else")
            else_body = self.parse_body()
        return If(tuple(branches), else_body, line=start.line, column=start.column)

    def parse_repeat(self) -> Repeat:
        start = self.expect("repeat")
        count = self.parse_or()
        if not self.check("times"):
            raise self.error(f"Expected 'times' after repeat-count expression, found {self._describe(self.peek())}")
        self.advance()
        self.expect(":", "after 'times'")
        body = self.parse_body()
        return Repeat(count, body, line=start.line, column=start.column)

    def parse_try(self) -> Try:
        start = self.expect("try")
        self.expect(":", "after 'try'")
        body = self.parse_body()
        catch_var = catch_body = finally_body = None
        if self._continues_with("catch"):
            self.advance()
            catch_var = self.expect(IDENT, "after 'catch'").text
            self.expect(":", "after catch variable")
            catch_body = self.parse_body()
        if self._continues_with("finally"):
            self.advance()
            self.expect(":", "after 'finally'")
            finally_body = self.parse_body()
        if catch_body is None and finally_body is None:
            raise self.error("'try' requires a 'catch' or 'finally' clause", start)
        return Try(body, catch_var, catch_body, finally_body, line=start.line, column=start.column)

    def _binary_level(self, operand, ops) -> Expr:
        left = operand()
        while self.peek().kind in ops:
            op = self.advance()
            right = operand()
            left = Binary(op.kind, left, right, line=op.line, column=op.column)
        return left

    def parse_or(self) -> Expr:
        return self._binary_level(self.parse_and, ("or",))

    def parse_and(self) -> Expr:
        return self._binary_level(self.parse_comparison, ("and",))

    def parse_comparison(self) -> Expr:
        return self._binary_level(self.parse_additive, COMPARISON_OPS)

    def parse_additive(self) -> Expr:
        return self._binary_level(self.parse_multiplicative, ("+", "-"))

    def parse_multiplicative(self) -> Expr:
        return self._binary_level(self.parse_unary, ("*", "/"))

    def parse_unary(self) -> Expr:
        if self.check("-"):
            op = self.advance()
            if self.check(NUMBER):
                num = self.advance()
                return NumberLit(-num.value, line=op.line, column=op.column)
            operand = self.parse_unary()
            return Binary("-", NumberLit(0.0, line=op.line, column=op.column), operand, line=op.line, column=op.column)
        return self.parse_primary()

    def parse_primary(self) -> Expr:
        tok = self.peek()
        match tok.kind:
            case "NUMBER":
                self.advance()
                return NumberLit(tok.value, line=tok.line, column=tok.column)
            case "STRING":
                self.advance()
                return StringLit(tok.value, line=tok.line, column=tok.column)
            case "true" | "false":
                self.advance()
                return BoolLit(tok.kind == "true", line=tok.line, column=tok.column)
            case "json":
                self.advance()
                return JsonLit(self.parse_json_value(), line=tok.line, column=tok.column)
            case "IDENT":
                return self.parse_name()
            case "(":
                self.advance()
                expr = self.parse_expr()
                self.expect(")", "to close parenthesized expression")
                return expr
            case "[":
                return self.parse_list()
            case "{":
                return self.parse_map()
            case "if" | "repeat" | "try":
                return self.parse_expr()
            case _:
                raise self.error(f"Unexpected token in expression: {self._describe(tok)}", tok)

    def parse_name(self) -> Expr:
        name = self.advance()
        if self.accept("."):
            method = self.expect(IDENT, "as method name after '.'")
            if not self.check("("):
                raise self.error("Expected '(' after method name")
            args = self.parse_args()
            return MethodCall(name.text, method.text, args, line=name.line, column=name.column)
        if self.check("("):
            args = self.parse_args()
            return Call(name.text, args, line=name.line, column=name.column)
        return Var(name.text, line=name.line, column=name.column)

    def parse_args(self) -> Tuple[Expr, ...]:
        self.expect("(")
        args: List[Expr] = []
        if not self.check(")"):
            while True:
                args.append(self.parse_expr())
                if not self.accept(","):
                    break
        self.expect(")", "to close argument list")
        return tuple(args)

    def parse_list(self) -> ListLit:
        start = self.expect("[")
        items: List[Expr] = []
        if not self.check("]"):
            while True:
                items.append(self.parse_expr())
                if not self.accept(","):
                    break
        self.expect("]", "to close list literal")
        return ListLit(tuple(items), line=start.line, column=start.column)

    def parse_map(self) -> MapLit:
        start = self.expect("{")
        entries: List[Tuple[str, Expr]] = []
        if not self.check("}"):
            while True:
                key = self.peek()
                if key.kind == IDENT:
                    self.advance()
                    key_text = key.text
                elif key.kind == STRING:
                    self.advance()
                    key_text = key.value
                else:
                    raise self.error(f"Expected identifier or string as map key, found {self._describe(key)}", key)
                self.expect(":", "after map key")
                entries.append((key_text, self.parse_expr()))
                if not self.accept(","):
                    break
        self.expect("}", "to close map literal")
        return MapLit(tuple(entries), line=start.line, column=start.column)

    # --- constant JSON ---

    def parse_json_value(self) -> Any:
        tok = self.peek()
        match tok.kind:
            case "{":
                self.advance()
                obj: Dict[str, Any] = {}
                if not self.check("}"):
                    while True:
                        key = self.expect(STRING, "as JSON object key")
                        self.expect(":", "after JSON object key")
                        obj[key.value] = self.parse_json_value()
                        if not self.accept(","):
                            break
                self.expect("}", "to close JSON object")
                return obj
            case "[":
                self.advance()
                arr: List[Any] = []
                if not self.check("]"):
                    while True:
                        arr.append(self.parse_json_value())
                        if not self.accept(","):
                            break
                self.expect("]", "to close JSON array")
                return arr
            case "STRING":
                self.advance()
                return tok.value
            case "NUMBER":
                self.advance()
                return _json_number(tok.value)
            case "-":
                self.advance()
                num = self.expect(NUMBER, "after '-' in JSON literal")
                return _json_number(-num.value)
            case "true" | "false":
                self.advance()
                return tok.kind == "true"
            case "IDENT" if tok.text == "null":
                self.advance()
                return None
            case _:
                raise self.error(
                    f"json literal must be constant; unexpected {self._describe(tok)}",
                    tok,
                )


def _json_number(n: float):
    # Integral JSON numbers keep an int shape so they serialize back as `1`, not `1.0`.
    return int(n) if float(n).is_integer() and abs(n) < 2 ** 53 else n


def _nesting_guard(parser: Parser, parse):
    try:
        return parse()
    except RecursionError:
        raise parser.error("expression nested too deeply") from None


def parse_program(source: str) -> Program:
    """Parses source text into a Program; lexing and parsing failures raise ParseError."""
    parser = Parser(tokenize(source))
    return _nesting_guard(parser, parser.parse_program)


def _standalone_expression(parser: Parser) -> Expr:
    parser.skip_newlines()
    expr = parser.parse_expr()
    parser.end_of_line()
    parser.skip_newlines()
    if not parser.check(EOF):
        raise parser.error(f"Unexpected tokens after end of expression: {parser._describe(parser.peek())}")
    return expr


def parse_expression(source: str) -> Expr:
    """Parses a single standalone expression (used by REPL-style callers and tests)."""
    parser = Parser(tokenize(source))
    return _nesting_guard(parser, lambda: _standalone_expression(parser))


__all__ = [
    "Parser",
    "ParseError",
    "LexError",
    "parse_program",
    "parse_expression",
]
