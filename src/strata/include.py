"""Include resolution and configuration merging.

A unit configuration may include parent configurations. Parents are loaded in
two stages. The first stage only exposes what graph-affecting child blocks are
allowed to see (``Exposure``); the second stage parses the parent fully, with
the child's dependency blocks injected under the deep merge strategy. The
parents are then merged into the child with the ``no_merge``, ``shallow`` or
``deep`` strategy.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from strata.expressions import references
from strata.schema import DEEP, NO_MERGE, SHALLOW, Block, ConfigDocument, IncludeDeclaration

logger = logging.getLogger(__name__)

# Attributes a child never inherits from a parent.
NON_INHERITED_ATTRIBUTES = {"skip"}

# Blocks replaced as a whole even under the deep strategy.
SHALLOW_ONLY_BLOCKS = {"remote_state", "generate", "exclude"}

# Nested labeled blocks merged by label.
LABELED_SUB_BLOCKS = {
    "terraform": ("before_hook", "after_hook", "error_hook", "extra_arguments"),
    "errors": ("retry", "ignore"),
}

# Lists of error patterns are merged without duplicates.
_PATTERN_LISTS = {"retryable_errors", "ignorable_errors"}


class MergeError(Exception):
    """Base exception for include and merge errors."""

    pass


class Exposure(Enum):
    """What of a parent the child's graph-affecting blocks may read."""

    GRAPH = "graph"
    FULL = "full"


def _reads_dependencies(raw) -> bool:
    for block in raw.blocks:
        if any(ref.split(".")[0] == "dependency" for ref in references(block.body)):
            return True
    return any(
        ref.split(".")[0] == "dependency" for ref in references(raw.attributes)
    )


def exposure_for(raw) -> Exposure:
    """Compute how much of a parent is visible to graph-affecting child blocks.

    A parent that declares dependency blocks, or reads dependency values,
    only exposes its locals; any other parent is exposed in full.
    """
    if raw.has_block("dependency") or _reads_dependencies(raw):
        return Exposure.GRAPH
    return Exposure.FULL


@dataclass
class ParentView:
    declaration: IncludeDeclaration
    exposure: Exposure
    document: ConfigDocument

    def exposed(self) -> Dict[str, Any]:
        if self.exposure is Exposure.GRAPH:
            return {"locals": dict(self.document.locals)}
        return self.document.to_exposed()


@dataclass
class ParentViews:
    views: Dict[str, ParentView] = field(default_factory=dict)

    def exposed(self) -> Dict[str, Any]:
        """The ``include`` namespace seen by graph-affecting child blocks."""
        return {
            label: view.exposed()
            for label, view in self.views.items()
            if view.declaration.expose
        }


def deep_merge_values(parent: Any, child: Any) -> Any:
    """Deep-merge two values: maps recursively, lists concatenated, child wins otherwise."""
    if isinstance(parent, dict) and isinstance(child, dict):
        result = dict(parent)
        for key, value in child.items():
            result[key] = deep_merge_values(parent[key], value) if key in parent else value
        return result
    if isinstance(parent, list) and isinstance(child, list):
        return parent + child
    return child


def _merge_patterns(parent: Dict[str, Any], child: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(parent)
    for key, value in child.items():
        if key in _PATTERN_LISTS and isinstance(parent.get(key), list) and isinstance(value, list):
            result[key] = list(dict.fromkeys(parent[key] + value))
        else:
            result[key] = value
    return result


def _merge_sub_blocks(block_type: str, parent: Dict[str, Any], child: Dict[str, Any], strategy: str) -> Dict[str, Any]:
    sub_types = LABELED_SUB_BLOCKS.get(block_type, ())
    if strategy == DEEP:
        plain_parent = {k: v for k, v in parent.items() if k not in sub_types}
        plain_child = {k: v for k, v in child.items() if k not in sub_types}
        result = deep_merge_values(plain_parent, plain_child)
    else:
        result = dict(parent)
        result.update({k: v for k, v in child.items() if k not in sub_types})

    for sub_type in sub_types:
        parent_subs = parent.get(sub_type) or {}
        child_subs = child.get(sub_type) or {}
        if not parent_subs and not child_subs:
            continue
        merged = dict(parent_subs)
        for label, body in child_subs.items():
            if label in merged and block_type == "errors":
                merged[label] = _merge_patterns(merged[label], body)
            elif label in merged and strategy == DEEP:
                merged[label] = deep_merge_values(merged[label], body)
            else:
                merged[label] = body
        result[sub_type] = merged
    return result


def _merge_labeled(block_type: str, parent: List[Block], child: List[Block], strategy: str) -> List[Block]:
    merged: Dict[tuple, Block] = {block.labels: block for block in parent}
    for block in child:
        existing = merged.get(block.labels)
        if existing is not None and strategy == DEEP and block_type not in SHALLOW_ONLY_BLOCKS:
            merged[block.labels] = Block(
                block_type, block.labels, deep_merge_values(existing.body, block.body)
            )
        else:
            merged[block.labels] = block
    return list(merged.values())


def merge_blocks(parent: Dict[str, List[Block]], child: Dict[str, List[Block]], strategy: str) -> Dict[str, List[Block]]:
    """Merge the blocks of a parent document into the blocks of a child."""
    result: Dict[str, List[Block]] = {}
    for block_type in list(dict.fromkeys(list(parent) + list(child))):
        parent_blocks = parent.get(block_type, [])
        child_blocks = child.get(block_type, [])
        if not parent_blocks or not child_blocks:
            result[block_type] = list(child_blocks or parent_blocks)
            continue

        if block_type == "dependencies":
            parent_paths = parent_blocks[0].body.get("paths") or []
            child_paths = child_blocks[0].body.get("paths") or []
            body = dict(child_blocks[0].body)
            body["paths"] = list(parent_paths) + list(child_paths)
            result[block_type] = [Block(block_type, (), body)]
        elif parent_blocks[0].labels or child_blocks[0].labels:
            result[block_type] = _merge_labeled(block_type, parent_blocks, child_blocks, strategy)
        elif block_type in SHALLOW_ONLY_BLOCKS:
            result[block_type] = list(child_blocks)
        elif block_type in LABELED_SUB_BLOCKS:
            body = _merge_sub_blocks(
                block_type, parent_blocks[0].body, child_blocks[0].body, strategy
            )
            result[block_type] = [Block(block_type, (), body)]
        elif strategy == DEEP:
            body = deep_merge_values(parent_blocks[0].body, child_blocks[0].body)
            result[block_type] = [Block(block_type, (), body)]
        else:
            result[block_type] = list(child_blocks)
    return result


def merge_documents(parent: ConfigDocument, child: ConfigDocument, strategy: str) -> ConfigDocument:
    """Merge ``parent`` into ``child``; the child takes precedence.

    Args:
        parent: Parsed parent document.
        child: Child document, possibly already merged with other parents.
        strategy: ``no_merge``, ``shallow`` or ``deep``.

    Returns:
        A new ConfigDocument. Locals are never merged.
    """
    if strategy == NO_MERGE:
        return child

    inherited = {
        name: value
        for name, value in parent.attributes.items()
        if name not in NON_INHERITED_ATTRIBUTES
    }
    if strategy == DEEP:
        attributes = deep_merge_values(inherited, child.attributes)
        inputs = deep_merge_values(parent.inputs, child.inputs)
    else:
        attributes = dict(inherited)
        attributes.update(child.attributes)
        inputs = dict(parent.inputs)
        inputs.update(child.inputs)

    features = dict(parent.features)
    features.update(child.features)

    return child.replace(
        attributes=attributes,
        inputs=inputs,
        blocks=merge_blocks(parent.blocks, child.blocks, strategy),
        features=features,
    )


class IncludeResolver:
    """Loads included parents and merges them into a child configuration."""

    def __init__(self, parser):
        """Initialize the resolver.

        Args:
            parser: The ConfigParser used to load parent configurations.
        """
        self.parser = parser

    def _check_single_level(self, declaration: IncludeDeclaration) -> Any:
        raw = self.parser.load_raw(declaration.path)
        if raw.has_block("include"):
            raise MergeError(
                f"Only one level of includes is allowed: {declaration.path} "
                f"(included as '{declaration.label}') itself has an include block"
            )
        return raw

    def load_graph_views(
        self,
        child_raw,
        includes: List[IncludeDeclaration],
        blocks: Optional[FrozenSet[str]],
        context,
    ) -> ParentViews:
        """Load every parent as far as graph-affecting child blocks may see it."""
        include_paths = {decl.label: decl.path for decl in includes}
        views = ParentViews()
        for declaration in includes:
            raw = self._check_single_level(declaration)
            exposure = exposure_for(raw)
            stage_blocks = frozenset({"feature"}) if exposure is Exposure.GRAPH else blocks
            document = self.parser.parse(
                declaration.path,
                blocks=stage_blocks,
                context=context.for_parent(declaration.label, include_paths),
            )
            logger.debug(
                f"Loaded parent {declaration.path} for {child_raw.path} "
                f"with {exposure.value} exposure"
            )
            views.views[declaration.label] = ParentView(declaration, exposure, document)
        return views

    def load_full_parents(
        self,
        parents: ParentViews,
        child_dependencies: List[Block],
        blocks: Optional[FrozenSet[str]],
        context,
        include_paths: Dict[str, str],
    ) -> Dict[str, ConfigDocument]:
        """Parse every parent fully in the context of the child.

        Under the deep strategy the child's dependency blocks are injected so
        that parent expressions can read them.
        """
        documents: Dict[str, ConfigDocument] = {}
        for label, view in parents.views.items():
            deep = view.declaration.merge_strategy == DEEP
            injected = tuple(child_dependencies) if deep else ()
            if view.exposure is Exposure.FULL and not injected:
                documents[label] = view.document
                continue
            documents[label] = self.parser.parse(
                view.declaration.path,
                blocks=blocks,
                context=context.for_parent(label, include_paths, injected),
            )
        return documents

    def union_dependencies(
        self,
        includes: List[IncludeDeclaration],
        included: Dict[str, ConfigDocument],
        child_dependencies: List[Block],
    ) -> List[Block]:
        """Dependency blocks visible to child expressions.

        Parent dependency blocks join the child's only under the deep strategy.
        """
        union = list(child_dependencies)
        for declaration in includes:
            if declaration.merge_strategy != DEEP:
                continue
            parent_blocks = included[declaration.label].get_blocks("dependency")
            union = _merge_labeled("dependency", parent_blocks, union, DEEP)
        return union

    def resolve(self, child: ConfigDocument) -> ConfigDocument:
        """Merge every included parent into ``child``.

        Parents are applied from last to first so that earlier includes have
        the lowest precedence and the child the highest.

        Raises:
            MergeError: If an included parent was not loaded.
        """
        result = child
        for declaration in reversed(child.includes):
            parent = child.included.get(declaration.label)
            if parent is None:
                raise MergeError(
                    f"Include '{declaration.label}' of {child.path} was not loaded"
                )
            result = merge_documents(parent, result, declaration.merge_strategy)
        return result
