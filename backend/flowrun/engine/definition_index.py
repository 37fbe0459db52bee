"""Definition Index - Flat lookups over a recursive step definition tree"""
from typing import Dict, FrozenSet, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Set, Union

from ..domain.models import BranchPath, FlowDefinition, StepDefinition
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PathOwner(NamedTuple):
    """The branch step and path a nested step definition lives in"""
    branch: StepDefinition
    path: BranchPath


class DefinitionIndex:
    """
    Index a flow's step definitions by step id

    Nested steps inside branch paths are indexed alongside top-level steps,
    together with the branch/path that owns them. Step ids are unique per
    flow; on a duplicate the first occurrence wins.
    """

    def __init__(self, steps: Sequence[StepDefinition]):
        self.top_level: List[StepDefinition] = list(steps)
        self._steps: Dict[str, StepDefinition] = {}
        self._owners: Dict[str, PathOwner] = {}
        self._descendants: Dict[str, FrozenSet[str]] = {}

        for step in self.top_level:
            self._add(step, None)

    @classmethod
    def of(
        cls,
        definitions: Union["DefinitionIndex", FlowDefinition, Sequence[StepDefinition]]
    ) -> "DefinitionIndex":
        """Build an index from a definition list or flow, reusing an existing index"""
        if isinstance(definitions, DefinitionIndex):
            return definitions
        if isinstance(definitions, FlowDefinition):
            return cls(definitions.steps)
        return cls(list(definitions))

    def _add(self, step: StepDefinition, owner: Optional[PathOwner]) -> None:
        if step.step_id in self._steps:
            logger.warning(f"Duplicate step id in flow definition: {step.step_id}")
            return
        self._steps[step.step_id] = step
        if owner is not None:
            self._owners[step.step_id] = owner
        for path in step.paths:
            for child in path.steps:
                self._add(child, PathOwner(step, path))

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, step_id: str) -> Optional[StepDefinition]:
        return self._steps.get(step_id)

    def owner_of(self, step_id: str) -> Optional[PathOwner]:
        """Branch and path containing a nested step (None for top-level steps)"""
        return self._owners.get(step_id)

    def descendant_step_ids(self, branch_step_id: str) -> FrozenSet[str]:
        """Every step id nested anywhere under a branch step, at any depth"""
        cached = self._descendants.get(branch_step_id)
        if cached is not None:
            return cached

        found: Set[str] = set()
        branch = self._steps.get(branch_step_id)
        pending = [branch] if branch else []
        while pending:
            step = pending.pop()
            for path in step.paths:
                for child in path.steps:
                    if child.step_id not in found:
                        found.add(child.step_id)
                        pending.append(child)

        result = frozenset(found)
        self._descendants[branch_step_id] = result
        return result

    @property
    def by_id(self) -> Dict[str, StepDefinition]:
        return dict(self._steps)

    def __iter__(self) -> Iterator[StepDefinition]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps


def iter_paths(steps: Iterable[StepDefinition]) -> Iterator[PathOwner]:
    """Yield every (branch, path) pair in a definition tree, depth first"""
    for step in steps:
        for path in step.paths:
            yield PathOwner(step, path)
            yield from iter_paths(path.steps)
