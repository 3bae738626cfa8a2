"""
外部协作方注册表（自动步骤调用）
"""
import asyncio
import inspect
import time
import logging
from typing import Dict, Any, Optional, List, Callable
from dataclasses import dataclass, field

from jsonschema import Draft7Validator

from ..exceptions import NotFoundError


logger = logging.getLogger(__name__)


@dataclass
class CollaboratorDefinition:
    """协作方定义"""
    name: str
    version: str
    handler: Callable
    description: str = ""
    timeout: Optional[float] = None  # 秒，None 使用注册表默认值
    output_schema: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class CollaboratorRegistry:
    """
    协作方注册表

    处理器签名为 handler(step_config, variables) -> dict，支持同步和异步函数。
    同步处理器在线程池中执行，不阻塞其他调度通道。
    step_config 中包含 idempotency_key，协作方应以此保证重复调用无副作用。
    """

    def __init__(self, default_timeout: float = 30.0):
        self.default_timeout = default_timeout
        self.collaborators: Dict[str, Dict[str, CollaboratorDefinition]] = {}
        self._latest: Dict[str, str] = {}
        self._validators: Dict[str, Draft7Validator] = {}

    def register(
        self,
        name: str,
        handler: Callable,
        version: str = "1",
        description: str = "",
        timeout: float = None,
        output_schema: Dict[str, Any] = None
    ) -> CollaboratorDefinition:
        """注册协作方，同名的最后注册版本作为默认版本"""
        if not callable(handler):
            raise ValueError(f"Handler for collaborator {name} must be callable")

        definition = CollaboratorDefinition(
            name=name,
            version=str(version),
            handler=handler,
            description=description,
            timeout=timeout,
            output_schema=output_schema
        )
        self.collaborators.setdefault(name, {})[definition.version] = definition
        self._latest[name] = definition.version
        if output_schema:
            self._validators[f"{name}@{definition.version}"] = Draft7Validator(output_schema)

        logger.info(f"Registered collaborator: {name}@{definition.version}")
        return definition

    def unregister(self, name: str, version: str = None):
        """注销协作方"""
        versions = self.collaborators.get(name)
        if not versions:
            return
        if version is None:
            del self.collaborators[name]
            self._latest.pop(name, None)
        else:
            versions.pop(str(version), None)
            if not versions:
                del self.collaborators[name]
                self._latest.pop(name, None)
            elif self._latest.get(name) == str(version):
                self._latest[name] = list(versions)[-1]
        logger.info(f"Unregistered collaborator: {name}")

    def get(self, name: str, version: str = None) -> CollaboratorDefinition:
        versions = self.collaborators.get(name, {})
        key = str(version) if version is not None else self._latest.get(name)
        definition = versions.get(key) if key else None
        if not definition:
            label = f"{name}@{version}" if version is not None else name
            raise NotFoundError(f"Collaborator not found: {label}")
        return definition

    def list(self) -> List[CollaboratorDefinition]:
        return [d for versions in self.collaborators.values() for d in versions.values()]

    async def invoke(
        self,
        name: str,
        step_config: Dict[str, Any],
        variables: Dict[str, Any],
        version: str = None
    ) -> Dict[str, Any]:
        """调用协作方，超时抛出 asyncio.TimeoutError"""
        definition = self.get(name, version)
        timeout = definition.timeout or self.default_timeout
        handler = definition.handler

        start_time = time.monotonic()
        if inspect.iscoroutinefunction(handler):
            result = await asyncio.wait_for(handler(step_config, variables), timeout)
        else:
            result = await asyncio.wait_for(
                asyncio.to_thread(handler, step_config, variables),
                timeout
            )
        duration_ms = (time.monotonic() - start_time) * 1000

        if result is None:
            result = {}
        if not isinstance(result, dict):
            raise TypeError(
                f"Collaborator {name} returned {type(result).__name__}, expected a mapping"
            )

        validator = self._validators.get(f"{name}@{definition.version}")
        if validator:
            errors = [e.message for e in validator.iter_errors(result)]
            if errors:
                raise ValueError(f"Collaborator {name} returned invalid output: {errors}")

        logger.debug(f"Collaborator {name}@{definition.version} returned in {duration_ms:.2f}ms")
        return result
