"""
sparkanywhere Main Entry Point

Starts the control plane with the selected provider, runs the Spark driver
to completion (or until SIGINT/SIGTERM) and writes the logs of every task.
"""

import signal
import threading
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from sparkanywhere.common.errors import SparkAnywhereError
from sparkanywhere.common.settings import Settings
from sparkanywhere.common.utils import setup_logging
from sparkanywhere.control_plane import ControlPlane


app = typer.Typer(help="sparkanywhere - run Spark on Docker or ECS behind a fake Kubernetes API")


def _flag(value: bool) -> Optional[bool]:
    # an unset flag must not override the config file or environment
    return True if value else None


@app.command()
def run(
    docker: bool = typer.Option(False, "--docker", help="Use Docker as the provider"),
    ecs: bool = typer.Option(False, "--ecs", help="Use ECS as the provider"),
    ecs_cluster_name: Optional[str] = typer.Option(None, "--ecs-cluster-name"),
    ecs_security_group: Optional[str] = typer.Option(None, "--ecs-security-group"),
    ecs_subnet_id: Optional[str] = typer.Option(None, "--ecs-subnet-id"),
    ecs_region: Optional[str] = typer.Option(None, "--ecs-region"),
    control_plane_addr: Optional[str] = typer.Option(
        None,
        "--control-plane-addr",
        help="Address at which tasks reach this process",
    ),
    instances: Optional[int] = typer.Option(None, "--instances", help="Number of Spark executors"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port of the API shim"),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level: DEBUG, INFO, WARNING, ERROR"
    ),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Where task logs are written"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML settings file"),
) -> None:
    """Run a Spark job on the selected provider"""
    try:
        settings = Settings.from_yaml(
            config,
            docker_enabled=_flag(docker),
            ecs_enabled=_flag(ecs),
            ecs={
                "cluster_name": ecs_cluster_name,
                "security_group": ecs_security_group,
                "subnet_id": ecs_subnet_id,
                "region": ecs_region,
            },
            control_plane_addr=control_plane_addr,
            instances=instances,
            port=port,
            log_level=log_level.upper() if log_level else None,
            log_dir=log_dir,
        )
    except (SparkAnywhereError, ValidationError) as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1)

    setup_logging(settings.log_level)

    try:
        control_plane = ControlPlane(settings)
    except SparkAnywhereError as e:
        typer.echo(f"Error creating sparkanywhere: {e}", err=True)
        raise typer.Exit(1)

    exit_code = run_until_done(control_plane)
    if exit_code:
        raise typer.Exit(exit_code)


def run_until_done(control_plane: ControlPlane) -> int:
    """Run the control plane until the driver exits or a signal arrives"""
    done = threading.Event()
    stop = threading.Event()
    failures: List[BaseException] = []

    def _run() -> None:
        try:
            control_plane.run()
        except Exception as e:
            failures.append(e)
            if not stop.is_set():
                typer.echo(f"Error running sparkanywhere: {e}", err=True)
        finally:
            done.set()

    def _on_signal(signum, frame) -> None:
        stop.set()

    previous = {
        signum: signal.signal(signum, _on_signal)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }

    try:
        threading.Thread(target=_run, name="control-plane", daemon=True).start()
        while not done.is_set() and not stop.is_set():
            done.wait(0.5)

        if stop.is_set():
            typer.echo("Shutting down...")
            control_plane.cancel()
            done.wait(10)

        exit_code = 1 if failures and not stop.is_set() else 0
        try:
            log_dir = control_plane.gather_logs()
            typer.echo(f"Logs written to {log_dir}")
        except SparkAnywhereError as e:
            typer.echo(f"Error gathering logs: {e}", err=True)
            exit_code = 1
        finally:
            control_plane.shutdown()
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    return exit_code


@app.command()
def version() -> None:
    """Show sparkanywhere version"""
    from sparkanywhere import __version__
    typer.echo(f"sparkanywhere v{__version__}")


if __name__ == "__main__":
    app()
