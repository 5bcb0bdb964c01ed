"""
Desugars a parsed module so that every top-level declaration becomes an
independently re-runnable and removable statement.

Classes are split into a skeleton plus one statement per member, lambdas bound
at top level get a forwarding wrapper, string-keyed dict displays are split per
key, and every import is rewritten into a call on the module's `__relive__`
linker so the module manager can track who depends on whom.
"""

import __future__
import ast
import copy
from typing import Iterable, List, Optional, Sequence, Tuple

import pystache

from relive.relive_datatypes import Program, TopLevelNode, UnsupportedConstructError
from relive.relive_printer import Printer

LINKER = '__relive__'
MEMBER_TEMP = '__relive_member__'
IMPL_PREFIX = '__relive_impl_'

# Kept inside the class skeleton: they only make sense at class creation.
RETAINED_METHODS = frozenset({'__init__', '__new__', '__init_subclass__', '__class_getitem__'})
RETAINED_ATTRIBUTES = frozenset({'__slots__', '__match_args__', '__qualname__', '__module__'})

TEMPLATES = {
    'forget': "globals().pop({{name}}, None)",
    'declare': "{{linker}}.declare({{names}})",
    'forwarder': "{{name}} = lambda *args, **kwargs: {{impl}}(*args, **kwargs)",
    'install': "{{linker}}.install_member({{owner}}, {{member}}, {{temp}})\ndel {{temp}}",
    'class_factory': "def {{temp}}():\n    pass\n    return {{name}}\n{{temp}} = {{temp}}()",
    'remove_member': "{{linker}}.remove_member(globals().get({{owner_key}}), {{member}})",
    'dict_anchor': "{{name}} = {}",
    'remove_item': "globals().get({{owner_key}}, {}).pop({{key}}, None)",
    'import_module': "{{target}} = {{linker}}.import_module({{spec}})",
    'import_package': "{{target}} = {{linker}}.import_module({{spec}}, top_level=True)",
    'import_from': "{{targets}} = {{linker}}.import_from({{spec}}, {{names}})",
    'import_star': "{{linker}}.import_star({{spec}})",
    'forget_star': "{{linker}}.forget_star({{spec}})",
}

_renderer = pystache.Renderer(escape=lambda u: u)


def render(template: str, **context) -> str:
    return _renderer.render(TEMPLATES[template], context)


def render_statements(template: str, **context) -> List[ast.stmt]:
    """Parsed template code. It has no lines of its own in the file, so the
    parser's locations are dropped."""
    stmts = ast.parse(render(template, linker=LINKER, **context)).body
    for stmt in stmts:
        for node in ast.walk(stmt):
            for attr in ('lineno', 'end_lineno'):
                if hasattr(node, attr):
                    delattr(node, attr)
    return stmts


def forget_code(names: Iterable[str]) -> Optional[str]:
    lines = [render('forget', name=repr(name)) for name in names]
    return "\n".join(lines) or None


def declare_code(names: Sequence[str]) -> str:
    return render('declare', linker=LINKER, names=", ".join(repr(n) for n in names))


def mangle(class_name: str, name: str) -> str:
    """Python's private-name mangling: `__x` inside `C` becomes `_C__x`."""
    if not name.startswith('__') or name.endswith('__') or '.' in name:
        return name
    stripped = class_name.lstrip('_')
    if not stripped:
        return name
    return f"_{stripped}{name}"


# =================================================================
# Scope analysis helpers
# =================================================================

class _SuspendFinder(ast.NodeVisitor):
    """Looks for suspend points that would run at module level."""
    def __init__(self):
        self.found = False

    def visit_Await(self, node):
        self.found = True

    def visit_AsyncFor(self, node):
        self.found = True

    def visit_AsyncWith(self, node):
        self.found = True

    def visit_comprehension(self, node):
        if node.is_async:
            self.found = True
        self.generic_visit(node)

    def _visit_function_header(self, node):
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_defaults(node.args)

    def _visit_defaults(self, args):
        for default in list(args.defaults) + [d for d in args.kw_defaults if d is not None]:
            self.visit(default)

    def visit_FunctionDef(self, node):
        self._visit_function_header(node)

    def visit_AsyncFunctionDef(self, node):
        self._visit_function_header(node)

    def visit_Lambda(self, node):
        self._visit_defaults(node.args)


def contains_top_level_suspend(node: ast.AST) -> bool:
    finder = _SuspendFinder()
    finder.visit(node)
    return finder.found


class _BindingCollector(ast.NodeVisitor):
    """Collects the names a statement binds in the scope it runs in."""
    def __init__(self):
        self.names: List[str] = []

    def _add(self, name: Optional[str]):
        if name and name not in self.names:
            self.names.append(name)

    def visit_Name(self, node):
        if isinstance(node.ctx, ast.Store):
            self._add(node.id)

    def _visit_defaults(self, args):
        for default in list(args.defaults) + [d for d in args.kw_defaults if d is not None]:
            self.visit(default)

    def visit_FunctionDef(self, node):
        self._add(node.name)
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_defaults(node.args)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node):
        self._add(node.name)
        for expr in node.decorator_list + node.bases + [k.value for k in node.keywords]:
            self.visit(expr)

    def visit_Lambda(self, node):
        self._visit_defaults(node.args)

    def visit_comprehension(self, node):
        # Comprehension targets are local to the comprehension.
        self.visit(node.iter)
        for condition in node.ifs:
            self.visit(condition)

    def visit_Import(self, node):
        for alias in node.names:
            self._add(alias.asname or alias.name.split('.')[0])

    def visit_ImportFrom(self, node):
        for alias in node.names:
            if alias.name != '*':
                self._add(alias.asname or alias.name)

    def visit_MatchAs(self, node):
        self._add(node.name)
        self.generic_visit(node)

    def visit_MatchStar(self, node):
        self._add(node.name)

    def visit_MatchMapping(self, node):
        self._add(node.rest)
        self.generic_visit(node)

    def visit_TypeAlias(self, node):
        self._add(node.name.id)


def bound_names(node: ast.AST) -> Tuple[str, ...]:
    collector = _BindingCollector()
    collector.visit(node)
    return tuple(collector.names)


def _loaded_names(node: ast.AST) -> set:
    return {n.id for n in ast.walk(node) if isinstance(n, ast.Name) and isinstance(n.ctx, ast.Load)}


def _is_docstring(stmt: ast.stmt) -> bool:
    return (isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant)
            and isinstance(stmt.value.value, str))


def _is_classvar(annotation: ast.expr) -> bool:
    if isinstance(annotation, ast.Subscript):
        annotation = annotation.value
    match annotation:
        case ast.Name(id='ClassVar') | ast.Attribute(attr='ClassVar'):
            return True
        case ast.Constant(value=str() as text):
            return text.startswith('ClassVar') or '.ClassVar' in text
    return False


def _decorator_name(decorator: ast.expr) -> Optional[str]:
    match decorator:
        case ast.Name(id=name) | ast.Attribute(attr=name):
            return name
    return None


def _splittable_unpack(target, value) -> bool:
    if len(target.elts) != len(value.elts) or not target.elts:
        return False
    if not all(isinstance(t, ast.Name) for t in target.elts):
        return False
    if any(isinstance(v, ast.Starred) for v in value.elts):
        return False
    # `a, b = b, a` must stay a single statement.
    return not ({t.id for t in target.elts} & _loaded_names(value))


def _splittable_dict(value: ast.Dict) -> bool:
    return bool(value.keys) and all(
        isinstance(k, ast.Constant) and isinstance(k.value, str) for k in value.keys)


def _module_specifier(node: ast.ImportFrom) -> str:
    return '.' * (node.level or 0) + (node.module or '')


# =================================================================
# Rewriters
# =================================================================

def linkage_for_import(alias: ast.alias) -> Tuple[List[ast.stmt], str]:
    spec = alias.name
    if alias.asname:
        stmts = render_statements('import_module', target=alias.asname, spec=repr(spec))
    elif '.' in spec:
        stmts = render_statements('import_package', target=spec.split('.')[0], spec=repr(spec))
    else:
        stmts = render_statements('import_module', target=spec, spec=repr(spec))
    return stmts, spec


def linkage_for_import_from(node: ast.ImportFrom) -> Tuple[List[ast.stmt], str]:
    spec = _module_specifier(node)
    if any(alias.name == '*' for alias in node.names):
        return render_statements('import_star', spec=repr(spec)), spec
    targets = ", ".join(alias.asname or alias.name for alias in node.names)
    names = ", ".join(repr(alias.name) for alias in node.names)
    return render_statements('import_from', targets=targets, spec=repr(spec), names=names), spec


class _ImportRewriter(ast.NodeTransformer):
    """Turns nested import statements into linker calls.

    Imports that run at module scope (e.g. inside a top-level `try`) are
    remembered as linkage targets of the enclosing top-level statement.
    """
    def __init__(self):
        self.changed = False
        self.targets: List[str] = []
        self._function_depth = 0

    def _visit_scope(self, node):
        self._function_depth += 1
        self.generic_visit(node)
        self._function_depth -= 1
        return node

    visit_FunctionDef = _visit_scope
    visit_AsyncFunctionDef = _visit_scope
    visit_Lambda = _visit_scope

    def _replace(self, node, stmts, spec):
        self.changed = True
        if self._function_depth == 0:
            self.targets.append(spec)
        for stmt in stmts:
            ast.copy_location(stmt, node)
        return stmts

    def visit_Import(self, node):
        out = []
        for alias in node.names:
            stmts, spec = linkage_for_import(alias)
            out.extend(self._replace(node, stmts, spec))
        return out

    def visit_ImportFrom(self, node):
        if node.module == '__future__':
            return node
        stmts, spec = linkage_for_import_from(node)
        return self._replace(node, stmts, spec)


class _PrivateNameMangler(ast.NodeTransformer):
    """Applies class-private name mangling to code hoisted out of a class body."""
    def __init__(self, class_name: str):
        self.class_name = class_name

    def visit_Name(self, node):
        node.id = mangle(self.class_name, node.id)
        return node

    def visit_Attribute(self, node):
        self.generic_visit(node)
        node.attr = mangle(self.class_name, node.attr)
        return node

    def visit_keyword(self, node):
        self.generic_visit(node)
        if node.arg:
            node.arg = mangle(self.class_name, node.arg)
        return node

    def visit_arg(self, node):
        node.arg = mangle(self.class_name, node.arg)
        return node

    def visit_FunctionDef(self, node):
        node.name = mangle(self.class_name, node.name)
        self.generic_visit(node)
        return node

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node):
        # A nested class body is mangled natively under its own name.
        node.name = mangle(self.class_name, node.name)
        for field in ('bases', 'keywords', 'decorator_list'):
            setattr(node, field, [self.visit(x) for x in getattr(node, field)])
        return node


class _ClassScopeRewriter(ast.NodeTransformer):
    """Rewrites reads of sibling class attributes into `Class.attr`."""
    def __init__(self, class_name: str, names: Iterable[str]):
        self.class_name = class_name
        self.names = set(names)

    def visit_Name(self, node):
        if isinstance(node.ctx, ast.Load) and node.id in self.names:
            return ast.copy_location(
                ast.Attribute(value=ast.Name(id=self.class_name, ctx=ast.Load()),
                              attr=node.id, ctx=ast.Load()),
                node)
        return node

    def visit_Lambda(self, node):
        # Class scope is not visible from a lambda body.
        return node


def _is_zero_arg_super(node: ast.AST) -> bool:
    return (isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
            and node.func.id == 'super' and not node.args and not node.keywords)


class _SuperResolver(ast.NodeTransformer):
    """Resolves `super()` statically against the literal first base.

    Instance methods call `Base.m(self, ...)`, static and class methods call
    `Base.m(...)`. An attribute read through `super()` in an instance method
    evaluates to None: hoisted fields no longer live on the class chain.
    """
    def __init__(self, base: ast.expr, receiver: Optional[str], static: bool):
        self.base = base
        self.receiver = receiver
        self.static = static

    def _base(self) -> ast.expr:
        return copy.deepcopy(self.base)

    def visit_Call(self, node):
        func = node.func
        if isinstance(func, ast.Attribute) and _is_zero_arg_super(func.value):
            args = [self.visit(a) for a in node.args]
            keywords = [self.visit(k) for k in node.keywords]
            if not self.static:
                if self.receiver is None:
                    return node
                args = [ast.Name(id=self.receiver, ctx=ast.Load())] + args
            call = ast.Call(func=ast.Attribute(value=self._base(), attr=func.attr, ctx=ast.Load()),
                            args=args, keywords=keywords)
            return ast.copy_location(call, node)
        self.generic_visit(node)
        return node

    def visit_Attribute(self, node):
        if _is_zero_arg_super(node.value):
            if self.static:
                return ast.copy_location(
                    ast.Attribute(value=self._base(), attr=node.attr, ctx=node.ctx), node)
            if isinstance(node.ctx, ast.Load):
                return ast.copy_location(ast.Constant(value=None), node)
            return node
        self.generic_visit(node)
        return node

    def resolve(self, function):
        """Rewrites the body of a hoisted method."""
        function.body = [self.visit(stmt) for stmt in function.body]
        return function

    def _skip(self, node):
        return node

    # Nested scopes keep their own super() semantics.
    visit_FunctionDef = _skip
    visit_AsyncFunctionDef = _skip
    visit_Lambda = _skip
    visit_ClassDef = _skip


# =================================================================
# Transformer
# =================================================================

class ReliveTransformer:
    """Rewrites a parsed module into independently re-runnable statements."""

    def __init__(self, printer: Optional[Printer] = None):
        self.printer = printer or Printer()

    def transform(self, module: ast.Module, source: Optional[str] = None) -> Program:
        program = Program()
        for stmt in module.body:
            program.nodes.extend(self._transform_statement(stmt, source, program))
        return program

    # --- Node construction ---

    def _node(self, stmt: ast.AST, source: Optional[str], *, original: bool, line: int,
              **meta) -> TopLevelNode:
        rewriter = _ImportRewriter()
        stmt = rewriter.visit(stmt)
        if isinstance(stmt, list):
            stmt = ast.Module(body=stmt, type_ignores=[])
        key = self.printer.normalize(stmt)
        text = None
        if original and not rewriter.changed and source is not None and isinstance(stmt, ast.stmt):
            text = self.printer.source_segment(source, stmt)
        if 'has_top_level_suspend' not in meta:
            meta['has_top_level_suspend'] = contains_top_level_suspend(stmt)
        meta['import_targets'] = tuple(meta.get('import_targets', ())) + tuple(rewriter.targets)
        if text is None:
            # The printed form runs; keep track of which file line each line came from.
            text = key
            meta['line_table'] = self.printer.line_table(stmt, key, line)
        return TopLevelNode(node=stmt, key=key, source_text=text, line=line, **meta)

    def _synthesized(self, stmts: List[ast.stmt], line: int, **meta) -> TopLevelNode:
        node = stmts[0] if len(stmts) == 1 else ast.Module(body=stmts, type_ignores=[])
        return self._node(node, None, original=False, line=line, **meta)

    # --- Dispatch ---

    def _transform_statement(self, stmt: ast.stmt, source: Optional[str],
                             program: Program) -> List[TopLevelNode]:
        line = self.printer.start_line(stmt)
        match stmt:
            case ast.Return() | ast.Nonlocal() | ast.Expr(value=ast.Yield() | ast.YieldFrom()):
                kind = type(stmt.value).__name__ if isinstance(stmt, ast.Expr) else type(stmt).__name__
                raise UnsupportedConstructError(kind, stmt.lineno)
            case ast.ImportFrom(module='__future__'):
                for alias in stmt.names:
                    feature = getattr(__future__, alias.name, None)
                    if feature is not None:
                        program.compile_flags |= feature.compiler_flag
                return [self._node(copy.deepcopy(stmt), source, original=True, line=line)]
            case ast.Import():
                return [self._linkage(*linkage_for_import(alias), line) for alias in stmt.names]
            case ast.ImportFrom():
                return [self._linkage(*linkage_for_import_from(stmt), line)]
            case ast.ClassDef(decorator_list=[]):
                return self._class(stmt, source, line)
            case ast.Assign(targets=[ast.Name(id=name)], value=ast.Lambda()):
                return self._forwarded_lambda(stmt, name, line)
            case ast.Assign(targets=[ast.Name(id=name)], value=ast.Dict() as value) if _splittable_dict(value):
                return self._split_dict(name, value, line)
            case ast.Assign(targets=[ast.Tuple() | ast.List() as target],
                            value=ast.Tuple() | ast.List() as value) if _splittable_unpack(target, value):
                out = []
                for t, v in zip(target.elts, value.elts):
                    single = ast.copy_location(ast.Assign(targets=[copy.deepcopy(t)], value=copy.deepcopy(v)), stmt)
                    out.extend(self._declaration(single, None, line, original=False))
                return out
            case ast.Assign() | ast.AnnAssign() | ast.FunctionDef() | ast.AsyncFunctionDef() | ast.ClassDef():
                return self._declaration(copy.deepcopy(stmt), source, line, original=True)
            case _:
                stmt = copy.deepcopy(stmt)
                return [self._node(stmt, source, original=True, line=line,
                                   defined_names=bound_names(stmt))]

    # --- Declarations ---

    def _declaration(self, stmt, source, line, *, original) -> List[TopLevelNode]:
        names = bound_names(stmt)
        removal = forget_code(names)
        suspends = contains_top_level_suspend(stmt)
        if suspends and names and isinstance(stmt, (ast.Assign, ast.AnnAssign)):
            # The names exist in scope before the suspending value resolves.
            declare = self._synthesized(ast.parse(declare_code(names)).body, line,
                                        defined_names=names, has_top_level_suspend=False)
            assignment = self._node(stmt, source, original=original, line=line,
                                    defined_names=names, removal_code=removal,
                                    has_top_level_suspend=True)
            return [declare, assignment]
        return [self._node(stmt, source, original=original, line=line,
                           defined_names=names, removal_code=removal,
                           has_top_level_suspend=suspends)]

    def _linkage(self, stmts: List[ast.stmt], spec: str, line: int) -> TopLevelNode:
        names = tuple(n for s in stmts for n in bound_names(s))
        if names:
            removal = forget_code(names)
        else:
            removal = render('forget_star', linker=LINKER, spec=repr(spec))
        return self._synthesized(stmts, line, defined_names=names, removal_code=removal,
                                 import_targets=(spec,))

    def _forwarded_lambda(self, stmt: ast.Assign, name: str, line: int) -> List[TopLevelNode]:
        impl = IMPL_PREFIX + name
        impl_stmt = ast.Assign(targets=[ast.Name(id=impl, ctx=ast.Store())],
                               value=copy.deepcopy(stmt.value), lineno=stmt.lineno)
        forwarder = render_statements('forwarder', name=name, impl=impl)
        return [
            self._synthesized([impl_stmt], line, defined_names=(impl,), removal_code=forget_code([impl])),
            self._synthesized(forwarder, line, defined_names=(name,), removal_code=forget_code([name])),
        ]

    def _split_dict(self, name: str, value: ast.Dict, line: int) -> List[TopLevelNode]:
        out = [self._synthesized(render_statements('dict_anchor', name=name), line,
                                 defined_names=(name,), removal_code=forget_code([name]),
                                 group_label=name, group_anchor=True)]
        for key, item in zip(value.keys, value.values):
            target = ast.Subscript(value=ast.Name(id=name, ctx=ast.Load()),
                                   slice=ast.Constant(value=key.value), ctx=ast.Store())
            assign = ast.Assign(targets=[target], value=copy.deepcopy(item), lineno=key.lineno)
            removal = render('remove_item', owner_key=repr(name), key=repr(key.value))
            out.append(self._synthesized([assign], key.lineno, group_label=name,
                                         member_name=key.value, removal_code=removal))
        return out

    # --- Classes ---

    def _class(self, stmt: ast.ClassDef, source: Optional[str], line: int) -> List[TopLevelNode]:
        class_name = stmt.name
        base = stmt.bases[0] if stmt.bases else ast.Name(id='object', ctx=ast.Load())
        retained: List[ast.stmt] = []
        members: List[TopLevelNode] = []
        scope_names: List[str] = []

        for index, item in enumerate(stmt.body):
            if index == 0 and _is_docstring(item):
                retained.append(copy.deepcopy(item))
                continue
            match item:
                case ast.Pass():
                    continue
                case ast.FunctionDef() | ast.AsyncFunctionDef() if item.name in RETAINED_METHODS:
                    retained.append(copy.deepcopy(item))
                case ast.FunctionDef() | ast.AsyncFunctionDef() | ast.ClassDef():
                    members.append(self._method_member(class_name, base, item, scope_names))
                case ast.Assign(targets=[ast.Name(id=attr)]) if attr not in RETAINED_ATTRIBUTES:
                    members.append(self._static_field(class_name, attr, item.value, item, scope_names))
                case ast.AnnAssign(target=ast.Name(id=attr), value=value) if attr not in RETAINED_ATTRIBUTES:
                    if _is_classvar(item.annotation):
                        if value is None:
                            retained.append(copy.deepcopy(item))
                        else:
                            members.append(self._static_field(class_name, attr, value, item, scope_names))
                    else:
                        members.append(self._instance_field(class_name, attr, value, item, scope_names))
                case _:
                    retained.append(copy.deepcopy(item))
            scope_names.extend(mangle(class_name, n) for n in bound_names(item))

        if not members:
            return self._declaration(copy.deepcopy(stmt), source, line, original=True)

        skeleton = ast.ClassDef(
            name=class_name,
            bases=copy.deepcopy(stmt.bases),
            keywords=copy.deepcopy(stmt.keywords),
            body=retained or [ast.Pass()],
            decorator_list=[],
            lineno=stmt.lineno,
            col_offset=stmt.col_offset,
        )
        if hasattr(stmt, 'type_params'):
            skeleton.type_params = copy.deepcopy(stmt.type_params)
        anchor = self._node(skeleton, None, original=False, line=line,
                            defined_names=(class_name,), removal_code=forget_code([class_name]),
                            group_label=class_name, group_anchor=True)
        return [anchor] + members

    def _class_scope(self, class_name: str, scope_names: List[str], node):
        node = _PrivateNameMangler(class_name).visit(node)
        return _ClassScopeRewriter(class_name, scope_names).visit(node)

    def _member(self, class_name: str, member: str, stmts: List[ast.stmt], item: ast.stmt) -> TopLevelNode:
        removal = render('remove_member', linker=LINKER, owner_key=repr(class_name), member=repr(member))
        return self._node(stmts[0] if len(stmts) == 1 else ast.Module(body=stmts, type_ignores=[]),
                          None, original=False, line=self.printer.start_line(item),
                          group_label=class_name, member_name=member, removal_code=removal)

    def _method_member(self, class_name, base, item, scope_names) -> TopLevelNode:
        member = mangle(class_name, item.name)
        definition = copy.deepcopy(item)
        if isinstance(definition, ast.ClassDef):
            definition.bases = [self._class_scope(class_name, scope_names, b) for b in definition.bases]
            definition.keywords = [self._class_scope(class_name, scope_names, k) for k in definition.keywords]
            definition.decorator_list = [self._class_scope(class_name, scope_names, d)
                                         for d in definition.decorator_list]
            # Built under its own name so its private names mangle as `_Inner__x`.
            factory = render_statements('class_factory', temp=MEMBER_TEMP, name=definition.name)
            factory[0].body[0] = definition
            install = render_statements('install', owner=class_name, member=repr(member), temp=MEMBER_TEMP)
            return self._member(class_name, member, factory + install, item)
        else:
            decorators = {_decorator_name(d) for d in definition.decorator_list}
            static = bool(decorators & {'staticmethod', 'classmethod'})
            params = definition.args.posonlyargs + definition.args.args
            receiver = params[0].arg if params and not static else None
            definition = _PrivateNameMangler(class_name).visit(definition)
            if receiver is not None:
                receiver = mangle(class_name, receiver)
            definition = _SuperResolver(base, receiver, static).resolve(definition)
            # Decorators and defaults are evaluated in class scope.
            rewriter = _ClassScopeRewriter(class_name, scope_names)
            definition.decorator_list = [rewriter.visit(d) for d in definition.decorator_list]
            definition.args.defaults = [rewriter.visit(d) for d in definition.args.defaults]
            definition.args.kw_defaults = [rewriter.visit(d) if d is not None else None
                                           for d in definition.args.kw_defaults]
        definition.name = MEMBER_TEMP
        install = render_statements('install', owner=class_name, member=repr(member), temp=MEMBER_TEMP)
        return self._member(class_name, member, [definition] + install, item)

    def _static_field(self, class_name, attr, value, item, scope_names) -> TopLevelNode:
        member = mangle(class_name, attr)
        target = ast.Attribute(value=ast.Name(id=class_name, ctx=ast.Load()), attr=member, ctx=ast.Store())
        value = self._class_scope(class_name, scope_names, copy.deepcopy(value))
        assign = ast.copy_location(ast.Assign(targets=[target], value=value), item)
        return self._member(class_name, member, [assign], item)

    def _instance_field(self, class_name, attr, value, item, scope_names) -> TopLevelNode:
        member = mangle(class_name, attr)
        args: List[ast.expr] = [ast.Name(id=class_name, ctx=ast.Load()), ast.Constant(value=member)]
        if value is not None:
            args.append(self._class_scope(class_name, scope_names, copy.deepcopy(value)))
        call = ast.Call(func=ast.Attribute(value=ast.Name(id=LINKER, ctx=ast.Load()),
                                           attr='instance_field', ctx=ast.Load()),
                        args=args, keywords=[])
        expr = ast.copy_location(ast.Expr(value=call), item)
        return self._member(class_name, member, [expr], item)
