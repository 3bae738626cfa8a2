"""
流程定义存储与发布校验
"""
import asyncio
import copy
import logging
from collections import deque
from dataclasses import replace
from typing import Dict, Any, List, Optional, Set

from ..models.clock import Clock, utcnow
from ..models.definition import (
    ProcessDefinition, StepSpec, StepKind, GatewayMode, Outcome,
    TriggerType, DefinitionRef, EXPIRABLE_KINDS
)
from ..storage.repository import DefinitionRepository
from ..exceptions import DefinitionInvalidError, NotFoundError
from .guards import validate_expression


logger = logging.getLogger(__name__)


class DefinitionValidator:
    """流程图校验器"""

    def validate(self, definition: ProcessDefinition) -> List[str]:
        """返回全部校验错误，空列表表示合法"""
        errors: List[str] = []

        if not definition.name:
            errors.append("process name is required")
        if not definition.steps:
            errors.append("process has no steps")
            return errors

        steps: Dict[str, StepSpec] = {}
        for step in definition.steps:
            if step.id in steps:
                errors.append(f"duplicate step id '{step.id}'")
            steps[step.id] = step

        if definition.start not in steps:
            errors.append(f"start step '{definition.start}' does not exist")

        if not any(step.kind == StepKind.END for step in definition.steps):
            errors.append("process has no end step")

        for step in definition.steps:
            errors.extend(self._validate_edges(step, steps))
            errors.extend(self._validate_config(step, definition))

        errors.extend(self._validate_trigger(definition))

        # 图结构错误存在时可达性分析没有意义
        if not errors:
            errors.extend(self._validate_reachability(definition, steps))

        return errors

    def _validate_edges(self, step: StepSpec, steps: Dict[str, StepSpec]) -> List[str]:
        errors = []

        if step.kind == StepKind.END:
            if step.edges:
                errors.append(f"end step '{step.id}' must not have outgoing edges")
            return errors

        if not step.edges:
            errors.append(f"step '{step.id}' has no outgoing edges")

        for edge in step.edges:
            if edge.target not in steps:
                errors.append(f"step '{step.id}' has edge to unknown step '{edge.target}'")
            if edge.guard:
                problem = validate_expression(edge.guard)
                if problem:
                    errors.append(f"step '{step.id}': {problem}")
            if edge.on == Outcome.EXPIRED and step.kind not in EXPIRABLE_KINDS:
                errors.append(f"step '{step.id}' of kind '{step.kind.value}' cannot have expired edges")

        for outcome in Outcome:
            defaults = [e for e in step.edges_for(outcome) if e.default]
            if len(defaults) > 1:
                errors.append(f"step '{step.id}' has more than one default edge")

        if step.edges and not step.edges_for(Outcome.COMPLETED):
            errors.append(f"step '{step.id}' has no completed edges")

        return errors

    def _validate_config(self, step: StepSpec, definition: ProcessDefinition) -> List[str]:
        errors = []
        config = step.config
        has_expired_edge = bool(step.edges_for(Outcome.EXPIRED))

        if step.kind == StepKind.TASK:
            if not config.get("assignee") and not config.get("role"):
                errors.append(f"task step '{step.id}' requires an assignee or role")
            if config.get("due_in") is not None:
                if not _positive_number(config["due_in"]):
                    errors.append(f"task step '{step.id}' due_in must be a positive number")
                if not has_expired_edge:
                    errors.append(f"task step '{step.id}' has due_in but no expired edge")

        elif step.kind == StepKind.TIMER:
            if not any(key in config for key in ("delay", "at", "at_variable")):
                errors.append(f"timer step '{step.id}' requires delay, at or at_variable")
            if "delay" in config and not _non_negative_number(config["delay"]):
                errors.append(f"timer step '{step.id}' delay must be a non-negative number")

        elif step.kind == StepKind.GATEWAY:
            try:
                mode = step.gateway_mode
            except ValueError:
                errors.append(f"gateway '{step.id}' has unknown mode '{config.get('mode')}'")
                return errors
            if mode == GatewayMode.JOIN:
                incoming = definition.incoming_sources(step.id)
                if len(incoming) < 2:
                    errors.append(f"join gateway '{step.id}' needs at least two incoming branches")
                if config.get("due_in") is not None and not _positive_number(config["due_in"]):
                    errors.append(f"join gateway '{step.id}' due_in must be a positive number")
            elif config.get("due_in") is not None:
                errors.append(f"gateway '{step.id}' supports due_in only in join mode")

        elif step.kind == StepKind.AUTOMATIC:
            if not config.get("action"):
                errors.append(f"automatic step '{step.id}' requires an action")
            max_attempts = config.get("max_attempts")
            if max_attempts is not None and (not isinstance(max_attempts, int) or max_attempts < 1):
                errors.append(f"automatic step '{step.id}' max_attempts must be a positive integer")

        elif step.kind == StepKind.EVENT:
            if not config.get("event"):
                errors.append(f"event step '{step.id}' requires an event name")
            if not config.get("correlation") and not config.get("correlation_key"):
                errors.append(f"event step '{step.id}' requires correlation or correlation_key")
            if config.get("correlation"):
                problem = validate_expression(config["correlation"])
                if problem:
                    errors.append(f"event step '{step.id}': {problem}")
            if config.get("timeout") is not None:
                if not _positive_number(config["timeout"]):
                    errors.append(f"event step '{step.id}' timeout must be a positive number")
                if not has_expired_edge:
                    errors.append(f"event step '{step.id}' has timeout but no expired edge")

        return errors

    def _validate_trigger(self, definition: ProcessDefinition) -> List[str]:
        trigger = definition.trigger
        if trigger.type == TriggerType.SCHEDULED:
            if not _positive_number(trigger.config.get("interval_seconds")):
                return ["scheduled trigger requires a positive interval_seconds"]
        elif trigger.type == TriggerType.EVENT:
            if not trigger.config.get("event"):
                return ["event trigger requires an event name"]
        return []

    def _validate_reachability(
        self,
        definition: ProcessDefinition,
        steps: Dict[str, StepSpec]
    ) -> List[str]:
        errors = []

        # 从起点正向可达
        reachable = _walk([definition.start], lambda s: [e.target for e in steps[s].edges])
        for step in definition.steps:
            if step.id not in reachable:
                errors.append(f"step '{step.id}' is unreachable from start step")

        # 反向可达到结束步骤
        predecessors: Dict[str, Set[str]] = {step_id: set() for step_id in steps}
        for step in definition.steps:
            for edge in step.edges:
                predecessors[edge.target].add(step.id)
        ends = [s.id for s in definition.steps if s.kind == StepKind.END]
        terminating = _walk(ends, lambda s: sorted(predecessors[s]))
        for step in definition.steps:
            if step.id in reachable and step.id not in terminating:
                errors.append(f"step '{step.id}' has no path to an end step")

        return errors


def _walk(roots: List[str], neighbours) -> Set[str]:
    seen: Set[str] = set()
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(neighbours(current))
    return seen


def _positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _non_negative_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


class DefinitionStore:
    """流程定义存储"""

    def __init__(
        self,
        repository: DefinitionRepository,
        clock: Clock = utcnow
    ):
        self.repository = repository
        self.clock = clock
        self.validator = DefinitionValidator()
        self._publish_lock = asyncio.Lock()

    def validate(self, definition: ProcessDefinition) -> List[str]:
        """校验流程定义（不发布）"""
        return self.validator.validate(definition)

    async def publish(self, definition: ProcessDefinition) -> DefinitionRef:
        """
        发布流程定义

        同名定义的版本号单调递增，已发布的版本不可修改
        """
        errors = self.validate(definition)
        if errors:
            logger.warning(f"Rejected definition '{definition.name}': {errors}")
            raise DefinitionInvalidError(errors)

        async with self._publish_lock:
            version = await self.repository.latest_version(definition.name) + 1
            published = replace(
                copy.deepcopy(definition),
                version=version,
                created_at=self.clock()
            )
            await self.repository.save(published)

        logger.info(f"Published process definition {published.ref}")
        return published.ref

    async def get(self, name: str, version: int) -> ProcessDefinition:
        """获取指定版本的不可变快照"""
        definition = await self.repository.get(name, version)
        if not definition:
            raise NotFoundError(f"Process definition not found: {name}@{version}")
        return definition

    async def get_ref(self, ref: DefinitionRef) -> ProcessDefinition:
        return await self.get(ref.name, ref.version)

    async def get_active(self, name: str) -> ProcessDefinition:
        """获取最高的已激活版本"""
        definition = await self.repository.get_active(name)
        if not definition:
            raise NotFoundError(f"No active process definition named '{name}'")
        return definition

    async def list(
        self,
        category: str = None,
        active_only: bool = False
    ) -> List[ProcessDefinition]:
        return await self.repository.list(category=category, active_only=active_only)

    async def deactivate(self, name: str, version: int) -> None:
        """停用版本（仅修改激活标志，已运行的实例不受影响）"""
        if not await self.repository.set_active(name, version, False):
            raise NotFoundError(f"Process definition not found: {name}@{version}")
        logger.info(f"Deactivated process definition {name}@{version}")

    async def activate(self, name: str, version: int) -> None:
        if not await self.repository.set_active(name, version, True):
            raise NotFoundError(f"Process definition not found: {name}@{version}")
        logger.info(f"Activated process definition {name}@{version}")

    async def resolve(self, ref: Optional[Any]) -> ProcessDefinition:
        """解析 DefinitionRef / 'name@version' / 'name'（取激活版本）"""
        if isinstance(ref, DefinitionRef):
            return await self.get_ref(ref)
        if isinstance(ref, str) and "@" in ref:
            try:
                return await self.get_ref(DefinitionRef.parse(ref))
            except ValueError:
                raise NotFoundError(f"Invalid definition reference: {ref}")
        if isinstance(ref, str) and ref:
            return await self.get_active(ref)
        raise NotFoundError(f"Invalid definition reference: {ref!r}")
