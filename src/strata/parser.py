"""Unit configuration parser.

This module reads ``terragrunt.hcl`` style files with python-hcl2 and evaluates
them in phases: include declarations, locals (iterated to a fixed point),
parent configurations, feature flags, dependency blocks and finally the
remaining attributes and blocks. Callers may ask for a partial parse that only
evaluates some block types, which is how the dependency graph is built without
fetching any dependency output.
"""

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple, Union

import hcl2

from strata.expressions import (
    EvaluationError,
    Scope,
    UnresolvedLocalError,
    evaluate_value,
)
from strata.functions import NO_DEFAULT, FunctionCache, FunctionContext, build_functions
from strata.include import IncludeResolver
from strata.options import RunOptions
from strata.schema import (
    Block,
    ConfigDocument,
    DependencyBlock,
    FeatureValue,
    IncludeDeclaration,
    SchemaError,
    coerce_feature_override,
    validate_feature_value,
    validate_merge_strategy,
)

logger = logging.getLogger(__name__)

# Blocks evaluated when building the dependency graph. None of them reads
# dependency outputs.
GRAPH_BLOCKS = frozenset(
    {"dependency", "dependencies", "exclude", "feature", "terraform", "skip"}
)

# Block types and the number of labels they carry.
BLOCK_LABELS = {
    "locals": 0,
    "include": 1,
    "dependency": 1,
    "dependencies": 0,
    "feature": 1,
    "terraform": 0,
    "remote_state": 0,
    "generate": 1,
    "errors": 0,
    "exclude": 0,
    "engine": 0,
    "catalog": 0,
    "unit": 1,
    "stack": 1,
}

# Labeled blocks nested inside top-level blocks. They are keyed by label.
NESTED_LABELED_BLOCKS = {
    "terraform": {"before_hook", "after_hook", "error_hook", "extra_arguments"},
    "errors": {"retry", "ignore"},
}

# Phases handled before the general attribute/block pass.
_PHASED_BLOCKS = {"locals", "include", "feature", "dependency"}

MAX_READ_DEPTH = 16


class ParseError(Exception):
    """Base exception for parser errors."""

    pass


class _NoFallback:
    def __repr__(self) -> str:
        return "NO_FALLBACK"


NO_FALLBACK = _NoFallback()


@dataclass(frozen=True)
class NotFound:
    """Result of parsing a missing file when the caller supplied a fallback."""

    path: str
    fallback: Any


@dataclass(frozen=True)
class RawDocument:
    """A configuration file as returned by python-hcl2, split into attributes and blocks."""

    path: str
    attributes: Dict[str, Any]
    blocks: Tuple[Block, ...]

    def blocks_of(self, block_type: str) -> List[Block]:
        return [block for block in self.blocks if block.type == block_type]

    def has_block(self, block_type: str) -> bool:
        return any(block.type == block_type for block in self.blocks)


@dataclass(frozen=True)
class ParseContext:
    """Where and why a file is being parsed.

    Attributes:
        terragrunt_dir: Directory of the unit the parse is for. Included parents
            are evaluated in the directory of the including unit.
        original_dir: Directory of the unit that started the parse chain.
        read_stack: Files being read through ``read_terragrunt_config``.
        active_include: Include label when parsing an included parent.
        include_paths: Include paths of the child when parsing a parent.
        injected_dependencies: Child dependency blocks made visible to a parent
            under the deep merge strategy.
    """

    terragrunt_dir: str
    original_dir: str = ""
    read_stack: Tuple[str, ...] = ()
    active_include: Optional[str] = None
    include_paths: Dict[str, str] = field(default_factory=dict)
    injected_dependencies: Tuple[Block, ...] = ()

    def for_parent(
        self, label: str, include_paths: Dict[str, str], injected: Tuple[Block, ...] = ()
    ) -> "ParseContext":
        return replace(
            self,
            active_include=label,
            include_paths=dict(include_paths),
            injected_dependencies=injected,
        )


# Cache for raw documents (keyed by file path and mtime)
_raw_cache: Dict[Tuple[str, int], RawDocument] = {}
_raw_cache_lock = threading.Lock()
_RAW_CACHE_LIMIT = 512


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _clean_body(body: Any) -> Any:
    if isinstance(body, dict):
        return {
            _strip_quotes(key): _clean_body(value)
            for key, value in body.items()
            if not (isinstance(key, str) and key.startswith("__") and key.endswith("__"))
        }
    if isinstance(body, list):
        return [_clean_body(item) for item in body]
    return body


def _unwrap_labels(path: str, block_type: str, entry: Any, count: int) -> Block:
    labels: List[str] = []
    body = entry
    for _ in range(count):
        if block_type == "include" and isinstance(body, dict) and "path" in body:
            break
        if not isinstance(body, dict) or len(body) != 1:
            raise ParseError(f"{path}: '{block_type}' block must have {count} label(s)")
        label, inner = next(iter(body.items()))
        if not isinstance(inner, dict):
            raise ParseError(f"{path}: malformed '{block_type}' block '{label}'")
        labels.append(_strip_quotes(label))
        body = inner
    if not isinstance(body, dict):
        raise ParseError(f"{path}: malformed '{block_type}' block")
    return Block(type=block_type, labels=tuple(labels), body=body)


def _nest_labeled(path: str, block: Block) -> Block:
    nested_types = NESTED_LABELED_BLOCKS.get(block.type)
    if not nested_types:
        return block
    body = dict(block.body)
    for nested_type in nested_types:
        entries = body.get(nested_type)
        if entries is None:
            continue
        by_label: Dict[str, Any] = {}
        for entry in entries if isinstance(entries, list) else [entries]:
            nested = _unwrap_labels(path, nested_type, entry, 1)
            if nested.label in by_label:
                raise ParseError(
                    f"{path}: duplicate {nested_type} block '{nested.label}' in {block.type}"
                )
            by_label[nested.label] = nested.body
        body[nested_type] = by_label
    return Block(type=block.type, labels=block.labels, body=body)


def to_raw_document(path: str, data: Dict[str, Any]) -> RawDocument:
    """Split python-hcl2 output into attributes and labeled blocks.

    Raises:
        ParseError: If a block has the wrong shape.
    """
    data = _clean_body(data)
    attributes: Dict[str, Any] = {}
    blocks: List[Block] = []
    for name, value in data.items():
        if name in BLOCK_LABELS and isinstance(value, list) and all(
            isinstance(item, dict) for item in value
        ):
            for entry in value:
                block = _unwrap_labels(path, name, entry, BLOCK_LABELS[name])
                blocks.append(_nest_labeled(path, block))
        else:
            attributes[name] = value

    labels_seen = set()
    for block in blocks:
        if not block.labels:
            continue
        key = (block.type, block.labels)
        if key in labels_seen:
            raise ParseError(f"{path}: duplicate {block.type} block '{block.label}'")
        labels_seen.add(key)
    return RawDocument(path=path, attributes=attributes, blocks=tuple(blocks))


def load_hcl_file(path: str, use_cache: bool = True) -> RawDocument:
    """Read and split a configuration file.

    Results are cached based on file path and modification time.

    Args:
        path: Path to the configuration file.
        use_cache: If True, use the raw document cache. Defaults to True.

    Returns:
        RawDocument.

    Raises:
        ParseError: If the file cannot be read or is not valid HCL.
    """
    path = os.path.abspath(path)
    try:
        cache_key = (path, os.stat(path).st_mtime_ns)
    except OSError as e:
        raise ParseError(f"Failed to read configuration file {path}: {e}")

    if use_cache:
        with _raw_cache_lock:
            if cache_key in _raw_cache:
                return _raw_cache[cache_key]

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = hcl2.load(f)
    except IOError as e:
        raise ParseError(f"Failed to read configuration file {path}: {e}")
    except Exception as e:
        # hcl2 reports syntax errors with lark exception types
        raise ParseError(f"Failed to parse configuration file {path}: {e}")

    document = to_raw_document(path, data)
    if use_cache:
        with _raw_cache_lock:
            _raw_cache[cache_key] = document
            if len(_raw_cache) > _RAW_CACHE_LIMIT:
                del _raw_cache[next(iter(_raw_cache))]
    return document


def clear_raw_cache() -> None:
    """Clear the raw document cache."""
    with _raw_cache_lock:
        _raw_cache.clear()


class _PendingLocals(Mapping):
    """``local`` namespace while locals are still being resolved."""

    def __init__(self, resolved: Dict[str, Any], pending: Dict[str, Any]):
        self._resolved = resolved
        self._pending = pending

    def __getitem__(self, name: str) -> Any:
        if name in self._resolved:
            return self._resolved[name]
        if name in self._pending:
            raise UnresolvedLocalError(name)
        raise KeyError(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._resolved)

    def __len__(self) -> int:
        return len(self._resolved)


class DependencyNamespace(Mapping):
    """Value of ``dependency.<name>``; outputs are fetched on first read."""

    def __init__(self, dependency: DependencyBlock, fetch: Callable[[DependencyBlock], Dict[str, Any]]):
        self.dependency = dependency
        self._fetch = fetch
        self._outputs: Optional[Dict[str, Any]] = None
        self._lock = threading.Lock()

    def _values(self) -> Dict[str, Any]:
        dep = self.dependency
        return {
            "name": dep.name,
            "config_path": dep.config_path,
            "enabled": dep.enabled,
            "skip_outputs": dep.skip_outputs,
            "mock_outputs": dep.mock_outputs,
        }

    def __getitem__(self, key: str) -> Any:
        if key != "outputs":
            return self._values()[key]
        if not self.dependency.enabled:
            raise EvaluationError(
                f"Dependency '{self.dependency.name}' is disabled and its outputs cannot be read"
            )
        with self._lock:
            if self._outputs is None:
                self._outputs = self._fetch(self.dependency)
            return self._outputs

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values()) + ["outputs"])

    def __len__(self) -> int:
        return len(self._values()) + 1


class ConfigParser:
    """Parses unit configuration files into ConfigDocuments."""

    def __init__(
        self,
        options: Optional[RunOptions] = None,
        function_cache: Optional[FunctionCache] = None,
        output_fetcher: Optional[Callable[[DependencyBlock, str], Dict[str, Any]]] = None,
    ):
        """Initialize the parser.

        Args:
            options: Run options. If None, uses defaults.
            function_cache: Cache for side-effecting functions, shared by every
                parse of the invocation. If None, creates one.
            output_fetcher: Callable returning the outputs of a dependency for a
                command, usually ``DependencyOutputCache.get_outputs``. Reading
                ``dependency.<name>.outputs`` without it is an error.
        """
        self.options = options or RunOptions()
        self.function_cache = function_cache or FunctionCache()
        self.output_fetcher = output_fetcher
        self.include_resolver = IncludeResolver(self)
        self._feature_defaults: Dict[Tuple[str, str, str], FeatureValue] = {}
        self._feature_lock = threading.Lock()

    def load_raw(self, path: str) -> RawDocument:
        return load_hcl_file(path)

    def parse(
        self,
        path: str,
        blocks: Optional[FrozenSet[str]] = None,
        context: Optional[ParseContext] = None,
        fallback: Any = NO_FALLBACK,
    ) -> Union[ConfigDocument, NotFound]:
        """Parse a configuration file.

        Args:
            path: Configuration file, or a unit directory holding one.
            blocks: Block types and attribute names to evaluate. Locals,
                includes, features and dependency blocks are always evaluated.
                None evaluates everything.
            context: Parse context. If None, the file is parsed as a unit.
            fallback: Value returned inside a NotFound when the file is missing.

        Returns:
            The resolved ConfigDocument, or NotFound.

        Raises:
            ParseError: If the file is missing without fallback, malformed, or
                an expression cannot be evaluated.
            MergeError: If an include cannot be merged.
        """
        path = os.path.abspath(path)
        if os.path.isdir(path):
            path = os.path.join(path, self.options.config_filename)
        if not os.path.isfile(path):
            if fallback is not NO_FALLBACK:
                return NotFound(path=path, fallback=fallback)
            raise ParseError(f"Configuration file not found: {path}")

        if context is None:
            unit_dir = os.path.dirname(path)
            context = ParseContext(terragrunt_dir=unit_dir, original_dir=unit_dir)
        if blocks is not None:
            blocks = frozenset(blocks)

        raw = self.load_raw(path)
        try:
            return self._parse_raw(raw, blocks, context)
        except (EvaluationError, SchemaError) as e:
            raise ParseError(f"{path}: {e}")

    def _function_context(self, raw: RawDocument, context: ParseContext) -> FunctionContext:
        fctx = FunctionContext(
            terragrunt_dir=context.terragrunt_dir,
            original_terragrunt_dir=context.original_dir or context.terragrunt_dir,
            include_paths=dict(context.include_paths),
            active_include=context.active_include,
            options=self.options,
            cache=self.function_cache,
        )
        fctx.read_config = partial(self._read_config, context, raw.path)
        return fctx

    def _parse_raw(
        self,
        raw: RawDocument,
        blocks: Optional[FrozenSet[str]],
        context: ParseContext,
    ) -> ConfigDocument:
        fctx = self._function_context(raw, context)
        base_scope = Scope(functions=build_functions(fctx))
        is_parent = context.active_include is not None

        # Include declarations only see functions.
        includes: List[IncludeDeclaration] = []
        if not is_parent:
            includes = self._evaluate_includes(raw, base_scope)
            fctx.include_paths = {inc.label: inc.path for inc in includes}

        locals_ = self._evaluate_locals(raw, base_scope)
        local_scope = base_scope.child({"local": locals_})

        parents = None
        graph_include: Dict[str, Any] = {}
        inherited_features: Dict[str, FeatureValue] = {}
        if includes:
            parents = self.include_resolver.load_graph_views(raw, includes, blocks, context)
            graph_include = parents.exposed()
            for view in parents.views.values():
                inherited_features.update(view.document.features)

        features = dict(inherited_features)
        features.update(
            self._evaluate_features(raw, local_scope.child({"include": graph_include}), context)
        )
        feature_namespace = {name: {"value": value} for name, value in features.items()}

        graph_scope = local_scope.child(
            {"include": graph_include, "feature": feature_namespace}
        )
        dependency_blocks = self._evaluate_blocks(raw.blocks_of("dependency"), graph_scope)
        dependency_blocks = self._merge_injected(dependency_blocks, context.injected_dependencies)

        included: Dict[str, ConfigDocument] = {}
        full_include: Dict[str, Any] = {}
        if parents is not None:
            included = self.include_resolver.load_full_parents(
                parents, dependency_blocks, blocks, context, fctx.include_paths
            )
            for declaration in includes:
                if declaration.expose:
                    full_include[declaration.label] = self._expose(
                        included[declaration.label], context.terragrunt_dir
                    )
            dependency_blocks = self.include_resolver.union_dependencies(
                includes, included, dependency_blocks
            )

        dependency_namespace = self._dependency_namespace(
            dependency_blocks, context.terragrunt_dir
        )
        graph_scope = graph_scope.child({"dependency": dependency_namespace})
        full_scope = local_scope.child(
            {
                "include": full_include,
                "feature": feature_namespace,
                "dependency": dependency_namespace,
            }
        )

        evaluated_blocks: Dict[str, List[Block]] = {}
        if raw.blocks_of("feature"):
            evaluated_blocks["feature"] = [
                Block("feature", block.labels, {"default": features.get(block.label)})
                for block in raw.blocks_of("feature")
            ]
        own_dependencies = [
            block for block in dependency_blocks
            if any(block.labels == raw_block.labels for raw_block in raw.blocks_of("dependency"))
        ]
        if own_dependencies:
            evaluated_blocks["dependency"] = own_dependencies

        for block in raw.blocks:
            if block.type in _PHASED_BLOCKS:
                continue
            if blocks is not None and block.type not in blocks:
                continue
            scope = graph_scope if block.type == "dependencies" else full_scope
            evaluated_blocks.setdefault(block.type, []).append(
                Block(block.type, block.labels, evaluate_value(block.body, scope))
            )

        attributes: Dict[str, Any] = {}
        inputs: Dict[str, Any] = {}
        for name, value in raw.attributes.items():
            if blocks is not None and name not in blocks:
                continue
            evaluated = evaluate_value(value, full_scope)
            if name == "inputs":
                if not isinstance(evaluated, dict):
                    raise ParseError(f"{raw.path}: 'inputs' must be a map")
                inputs = evaluated
            else:
                attributes[name] = evaluated

        document = ConfigDocument(
            path=raw.path,
            blocks=evaluated_blocks,
            attributes=attributes,
            locals=dict(locals_),
            inputs=inputs,
            includes=tuple(includes),
            included=included,
            features=features,
            partial=blocks,
        )
        if includes:
            return self.include_resolver.resolve(document)
        return document

    def _evaluate_includes(self, raw: RawDocument, scope: Scope) -> List[IncludeDeclaration]:
        includes = []
        for block in raw.blocks_of("include"):
            body = evaluate_value(block.body, scope)
            include_path = body.get("path")
            if not isinstance(include_path, str) or not include_path:
                raise ParseError(f"{raw.path}: include '{block.label}' must set 'path'")
            if not os.path.isabs(include_path):
                include_path = os.path.join(os.path.dirname(raw.path), include_path)
            includes.append(
                IncludeDeclaration(
                    label=block.label,
                    path=os.path.normpath(include_path),
                    expose=bool(body.get("expose", False)),
                    merge_strategy=validate_merge_strategy(
                        body.get("merge_strategy"), block.label
                    ),
                )
            )
        return includes

    def _evaluate_locals(self, raw: RawDocument, scope: Scope) -> Dict[str, Any]:
        pending: Dict[str, Any] = {}
        for block in raw.blocks_of("locals"):
            for name, value in block.body.items():
                if name in pending:
                    raise ParseError(f"{raw.path}: duplicate local '{name}'")
                pending[name] = value

        resolved: Dict[str, Any] = {}
        local_scope = scope.child({"local": _PendingLocals(resolved, pending)})
        while pending:
            progress = False
            for name in list(pending):
                try:
                    resolved[name] = evaluate_value(pending[name], local_scope)
                except UnresolvedLocalError:
                    continue
                del pending[name]
                progress = True
            if not progress:
                raise ParseError(
                    f"{raw.path}: could not resolve locals "
                    f"{', '.join(sorted(pending))}: they reference each other"
                )
        return resolved

    def _evaluate_features(
        self, raw: RawDocument, scope: Scope, context: ParseContext
    ) -> Dict[str, FeatureValue]:
        features: Dict[str, FeatureValue] = {}
        overrides = self.options.feature_overrides
        for block in raw.blocks_of("feature"):
            name = block.label
            key = (raw.path, context.terragrunt_dir, name)
            with self._feature_lock:
                cached = key in self._feature_defaults
                default = self._feature_defaults.get(key)
            if name in overrides:
                # Overrides short-circuit the default expression, but the
                # override still takes the default's type when it is known.
                features[name] = coerce_feature_override(overrides[name], default)
                continue
            if not cached:
                default = validate_feature_value(
                    name, evaluate_value(block.body.get("default"), scope)
                )
                with self._feature_lock:
                    self._feature_defaults.setdefault(key, default)
            features[name] = default
        return features

    def _evaluate_blocks(self, raw_blocks: List[Block], scope: Scope) -> List[Block]:
        return [
            Block(block.type, block.labels, evaluate_value(block.body, scope))
            for block in raw_blocks
        ]

    def _merge_injected(
        self, own: List[Block], injected: Tuple[Block, ...]
    ) -> List[Block]:
        if not injected:
            return own
        labels = {block.labels for block in own}
        return own + [block for block in injected if block.labels not in labels]

    def _fetch_outputs(self, dependency: DependencyBlock) -> Dict[str, Any]:
        if self.output_fetcher is None:
            raise EvaluationError(
                f"Outputs of dependency '{dependency.name}' are not available here"
            )
        return self.output_fetcher(dependency, self.options.command)

    def _dependency_namespace(self, blocks: List[Block], base_dir: str) -> Dict[str, Any]:
        namespace = {}
        for block in blocks:
            dependency = DependencyBlock.from_block(block, base_dir)
            namespace[dependency.name] = DependencyNamespace(dependency, self._fetch_outputs)
        return namespace

    def _expose(self, document: ConfigDocument, base_dir: str) -> Dict[str, Any]:
        exposed = document.to_exposed()
        if document.get_blocks("dependency"):
            exposed["dependency"] = self._dependency_namespace(
                document.get_blocks("dependency"), base_dir
            )
        return exposed

    def _read_config(self, context: ParseContext, current_path: str, path: str, default: Any) -> Any:
        if os.path.isdir(path):
            path = os.path.join(path, self.options.config_filename)
        path = os.path.abspath(path)
        stack = context.read_stack + (current_path,)
        if path in stack:
            chain = " -> ".join(stack + (path,))
            raise EvaluationError(f"Cyclic read_terragrunt_config: {chain}")
        if len(stack) > MAX_READ_DEPTH:
            raise EvaluationError(
                f"read_terragrunt_config nested deeper than {MAX_READ_DEPTH} files at {path}"
            )
        read_context = ParseContext(
            terragrunt_dir=os.path.dirname(path),
            original_dir=context.original_dir or context.terragrunt_dir,
            read_stack=stack,
        )
        fallback = NO_FALLBACK if default is NO_DEFAULT else default
        result = self.parse(path, context=read_context, fallback=fallback)
        if isinstance(result, NotFound):
            return result.fallback
        return self._expose(result, result.directory)


def parse_config(path: str, options: Optional[RunOptions] = None, **kwargs) -> ConfigDocument:
    """Parse a single unit configuration with a fresh parser."""
    return ConfigParser(options=options).parse(path, **kwargs)
