"""
流程引擎异常定义
"""
from typing import List, Optional


class ProcessEngineError(Exception):
    """流程引擎基础异常"""
    pass


class DefinitionParseError(ProcessEngineError):
    """流程定义解析异常"""
    pass


class DefinitionInvalidError(ProcessEngineError):
    """流程定义验证异常（发布时拒绝）"""
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Process definition is invalid: {'; '.join(self.errors)}")


class StepConfigError(ProcessEngineError):
    """步骤配置异常（守卫表达式错误、未知变量等）"""
    def __init__(self, step_id: Optional[str], message: str):
        self.step_id = step_id
        msg = f"Step '{step_id}': {message}" if step_id else message
        super().__init__(msg)


class CollaboratorError(ProcessEngineError):
    """外部协作方调用异常"""
    def __init__(self, step_id: str, message: str, attempts: int = 1, cause: Exception = None):
        self.step_id = step_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Collaborator call for step '{step_id}' failed after {attempts} attempt(s): {message}"
        )


class ConcurrencyConflictError(ProcessEngineError):
    """乐观锁版本冲突"""
    def __init__(self, instance_id: str, expected_version: int):
        self.instance_id = instance_id
        self.expected_version = expected_version
        super().__init__(
            f"Instance '{instance_id}' was modified concurrently "
            f"(expected version {expected_version})"
        )


class NotFoundError(ProcessEngineError):
    """实体不存在"""
    pass


class AlreadyTerminalError(ProcessEngineError):
    """实体已处于终止状态"""
    pass


class StoreUnavailableError(ProcessEngineError):
    """存储不可用（引擎级致命错误）"""
    pass


class DispatcherError(ProcessEngineError):
    """调度通道异常"""
    pass
