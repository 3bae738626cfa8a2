"""
流程定义解析器
"""
import yaml
import json
from datetime import datetime
from typing import Dict, Any, Union
from pathlib import Path

from jsonschema import Draft7Validator

from ..models.clock import utcnow
from ..models.definition import (
    ProcessDefinition, StepSpec, Edge, StepKind, Outcome,
    TriggerType, TriggerSpec
)
from ..exceptions import DefinitionParseError, DefinitionInvalidError


# 流程定义文档结构
DEFINITION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name", "steps"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "version": {"type": "integer", "minimum": 0},
        "description": {"type": ["string", "null"]},
        "category": {"type": ["string", "null"]},
        "start": {"type": "string"},
        "active": {"type": "boolean"},
        "sla_seconds": {"type": ["number", "null"], "exclusiveMinimum": 0},
        "created_by": {"type": ["string", "null"]},
        "metadata": {"type": "object"},
        "trigger": {
            "type": "object",
            "properties": {
                "type": {"enum": [t.value for t in TriggerType]},
                "config": {"type": "object"},
            },
        },
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["id", "kind"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "kind": {"enum": [k.value for k in StepKind]},
                    "name": {"type": "string"},
                    "config": {"type": "object"},
                    "edges": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["to"],
                            "properties": {
                                "to": {"type": "string"},
                                "guard": {"type": ["string", "null"]},
                                "default": {"type": "boolean"},
                                "on": {"enum": [o.value for o in Outcome]},
                            },
                        },
                    },
                },
            },
        },
    },
}


class DefinitionParser:
    """流程定义解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.validator = Draft7Validator(DEFINITION_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> ProcessDefinition:
        """
        解析流程定义

        Args:
            source: 定义来源，可以是文件路径、YAML/JSON字符串或字典

        Returns:
            ProcessDefinition: 未发布的流程定义（版本号为0）
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and source.lower().endswith(tuple(self.parsers)):
                path = Path(source)
                if path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise DefinitionParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> ProcessDefinition:
        """解析定义文件"""
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise DefinitionParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> ProcessDefinition:
        """解析定义字符串（YAML是JSON的超集）"""
        data = self._parse_yaml(content)
        if not isinstance(data, dict):
            raise DefinitionParseError("Process definition must be a mapping")
        return self.parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DefinitionParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise DefinitionParseError(f"Failed to parse JSON: {e}")

    def parse_dict(self, data: Dict[str, Any]) -> ProcessDefinition:
        """解析字典格式的流程定义"""
        if not isinstance(data, dict):
            raise DefinitionParseError("Process definition must be a mapping")
        if 'process' in data:
            data = data['process']

        errors = sorted(
            self.validator.iter_errors(data),
            key=lambda e: [str(p) for p in e.absolute_path]
        )
        if errors:
            raise DefinitionInvalidError([
                f"{'.'.join(str(p) for p in error.absolute_path) or '<root>'}: {error.message}"
                for error in errors
            ])

        trigger_data = data.get('trigger') or {}
        created_at = data.get('created_at')
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)

        return ProcessDefinition(
            name=data['name'],
            version=data.get('version', 0),
            description=data.get('description'),
            category=data.get('category'),
            start_step=data.get('start', ''),
            steps=[self._parse_step(step) for step in data['steps']],
            trigger=TriggerSpec(
                type=TriggerType(trigger_data.get('type', 'manual')),
                config=trigger_data.get('config', {})
            ),
            active=data.get('active', True),
            sla_seconds=data.get('sla_seconds'),
            created_by=data.get('created_by'),
            created_at=created_at or utcnow(),
            metadata=data.get('metadata', {})
        )

    def _parse_step(self, data: Dict[str, Any]) -> StepSpec:
        """解析步骤"""
        return StepSpec(
            id=data['id'],
            kind=StepKind(data['kind']),
            name=data.get('name', data['id']),
            config=dict(data.get('config', {})),
            edges=[self._parse_edge(edge) for edge in data.get('edges', [])]
        )

    def _parse_edge(self, data: Dict[str, Any]) -> Edge:
        """解析出边"""
        return Edge(
            target=data['to'],
            guard=data.get('guard'),
            default=data.get('default', False),
            on=Outcome(data.get('on', Outcome.COMPLETED.value))
        )

    def serialize(self, definition: ProcessDefinition, fmt: str = "dict") -> Union[Dict[str, Any], str]:
        """序列化流程定义"""
        data = definition_to_dict(definition)
        if fmt == "json":
            return json.dumps(data, ensure_ascii=False)
        if fmt in ("yaml", "yml"):
            return yaml.safe_dump(data, allow_unicode=True, sort_keys=False)
        return data


def definition_to_dict(definition: ProcessDefinition) -> Dict[str, Any]:
    """流程定义转字典"""
    return {
        'name': definition.name,
        'version': definition.version,
        'description': definition.description,
        'category': definition.category,
        'start': definition.start,
        'active': definition.active,
        'sla_seconds': definition.sla_seconds,
        'created_by': definition.created_by,
        'created_at': definition.created_at.isoformat(),
        'metadata': definition.metadata,
        'trigger': {
            'type': definition.trigger.type.value,
            'config': definition.trigger.config
        },
        'steps': [
            {
                'id': step.id,
                'kind': step.kind.value,
                'name': step.name,
                'config': step.config,
                'edges': [_edge_to_dict(edge) for edge in step.edges]
            }
            for step in definition.steps
        ]
    }


def _edge_to_dict(edge: Edge) -> Dict[str, Any]:
    data: Dict[str, Any] = {'to': edge.target}
    if edge.guard:
        data['guard'] = edge.guard
    if edge.default:
        data['default'] = True
    if edge.on != Outcome.COMPLETED:
        data['on'] = edge.on.value
    return data


def definition_from_dict(data: Dict[str, Any]) -> ProcessDefinition:
    """字典转流程定义"""
    return DefinitionParser().parse_dict(data)
