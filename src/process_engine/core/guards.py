"""
守卫表达式评估
"""
import ast
import logging
from typing import Dict, Any, Optional

from ..exceptions import StepConfigError


logger = logging.getLogger(__name__)


# 表达式中可用的内置函数
SAFE_BUILTINS: Dict[str, Any] = {
    "len": len,
    "min": min,
    "max": max,
    "abs": abs,
    "any": any,
    "all": all,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "True": True,
    "False": False,
    "None": None,
}


def validate_expression(expression: str) -> Optional[str]:
    """
    发布时检查表达式

    Returns:
        错误描述，表达式合法时返回 None
    """
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        return f"syntax error in '{expression}': {e.msg}"

    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            return f"name '{node.id}' is not allowed in '{expression}'"
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            return f"attribute '{node.attr}' is not allowed in '{expression}'"
        if isinstance(node, (ast.Lambda, ast.NamedExpr)):
            return f"'{type(node).__name__.lower()}' is not allowed in '{expression}'"
    return None


class GuardEvaluator:
    """条件评估器"""

    def evaluate(
        self,
        guard: Optional[str],
        variables: Dict[str, Any],
        step_id: str = None
    ) -> bool:
        """评估守卫表达式，空表达式视为真"""
        if not guard:
            return True
        return bool(self.evaluate_value(guard, variables, step_id))

    def evaluate_value(
        self,
        expression: str,
        variables: Dict[str, Any],
        step_id: str = None
    ) -> Any:
        """评估表达式并返回结果"""
        problem = validate_expression(expression)
        if problem:
            raise StepConfigError(step_id, problem)

        try:
            # 变量只读，评估在副本上进行
            return eval(expression, {"__builtins__": SAFE_BUILTINS}, dict(variables))
        except NameError as e:
            raise StepConfigError(step_id, f"unknown variable in '{expression}': {e}")
        except Exception as e:
            logger.debug(f"Failed to evaluate expression '{expression}': {e}")
            raise StepConfigError(step_id, f"cannot evaluate '{expression}': {e}")
