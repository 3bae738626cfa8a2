"""
Compliance Process Engine CLI
"""
import click
import asyncio
import logging
import yaml
import json
from pathlib import Path

from .config import EngineSettings
from .core.engine import ProcessEngine
from .exceptions import ProcessEngineError


def _parse_vars(values):
    """解析 --var key=value，值按 YAML 标量解析"""
    variables = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{item}'", param_hint="--var")
        variables[key] = yaml.safe_load(raw) if raw else ""
    return variables


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
def cli(log_level):
    """Compliance Process Engine CLI"""
    settings = EngineSettings.from_env()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host, port, reload):
    """Start the API server"""
    import uvicorn

    settings = EngineSettings.from_env()
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "process_engine.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload or settings.api_reload
    )


@cli.command()
@click.argument('definition_file', type=click.Path(exists=True))
def validate(definition_file):
    """Validate a process definition file"""
    engine = ProcessEngine(settings=EngineSettings.from_env())
    errors = engine.validate_definition(Path(definition_file))

    if errors:
        click.echo(f"{definition_file} is invalid:", err=True)
        for error in errors:
            click.echo(f"  - {error}", err=True)
        raise SystemExit(1)
    click.echo(f"{definition_file} is valid")


@cli.command()
@click.argument('definition_file', type=click.Path(exists=True))
@click.option('--var', 'variables', multiple=True, help='Initial variable as key=value')
@click.option('--complete-tasks', is_flag=True, help='Complete every open task')
@click.option('--result', 'results', multiple=True, help='Task result value as key=value (with --complete-tasks)')
@click.option('--actor', default='cli', help='Actor used for completed tasks')
def run(definition_file, variables, complete_tasks, results, actor):
    """Run a process definition once against in-memory stores"""
    initial = _parse_vars(variables)
    task_result = _parse_vars(results)

    async def _run():
        settings = EngineSettings.from_env()
        settings.database_url = ""
        engine = ProcessEngine(settings=settings)
        await engine.start(run_timers=False)
        try:
            ref = await engine.publish_definition(Path(definition_file))
            click.echo(f"Published {ref}")

            instance_id = await engine.instantiate(ref, variables=initial, started_by=actor)
            click.echo(f"Started instance: {instance_id}")

            # 逐个完成待办任务，直到实例不再产生新任务
            while complete_tasks:
                open_tasks = [t for t in await engine.list_tasks(instance_id=instance_id) if t.is_open()]
                if not open_tasks:
                    break
                for task in open_tasks:
                    click.echo(f"Completing task {task.id} ({task.step_id})")
                    await engine.complete_task(task.id, actor, dict(task_result))
            await engine.wait_until_idle()

            instance = await engine.get_instance(instance_id)
            tasks = await engine.list_tasks(instance_id=instance_id)
            click.echo(json.dumps({
                "instance_id": instance.id,
                "status": instance.status.value,
                "variables": instance.variables,
                "waiting_at": [p.step_id for p in instance.positions],
                "open_tasks": [t.id for t in tasks if t.is_open()],
                "error": instance.error.to_dict() if instance.error else None,
            }, indent=2, default=str, ensure_ascii=False))
        finally:
            await engine.stop()

    try:
        asyncio.run(_run())
    except ProcessEngineError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@cli.command()
def init():
    """Initialize a new process project"""
    click.echo("Initializing new process project...")

    for dir_name in ['processes', 'configs']:
        Path(dir_name).mkdir(exist_ok=True)
        click.echo(f"Created {dir_name}/")

    example_process = {
        "process": {
            "name": "document-review",
            "description": "Review a submitted document and archive it",
            "category": "review",
            "start": "review",
            "steps": [
                {
                    "id": "review",
                    "kind": "task",
                    "config": {"title": "Review document", "role": "reviewer", "due_in": 86400},
                    "edges": [
                        {"to": "archive", "guard": "approved == True"},
                        {"to": "rejected", "default": True},
                        {"to": "rejected", "on": "expired"}
                    ]
                },
                {"id": "archive", "kind": "end"},
                {"id": "rejected", "kind": "end"}
            ]
        }
    }

    path = Path('processes/example.yaml')
    with open(path, 'w', encoding='utf-8') as f:
        yaml.dump(example_process, f, sort_keys=False, allow_unicode=True)

    click.echo(f"Created {path}")
    click.echo("Project initialized successfully!")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
