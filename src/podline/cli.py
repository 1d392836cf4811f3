# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from podline.engine import DockerEngine
from podline.errors import PipelineError
from podline.loader import load_pipeline
from podline.model import Pipeline
from podline.runner import PipelineRunner
from podline.ui.console import LEVELS, Console

DEFAULT_FILE = "./podline.yaml"


def apply_flags(pipeline: Pipeline, flags: dict) -> Pipeline:
    """
    Overlay command-line flags onto the loaded settings.

    Flags only ever switch a setting on; an unset flag keeps what the
    definition says. `reuse`, `remove` and `retain` apply to both the
    volume and the network.
    """
    update = {}
    for what in ("reuse", "remove", "retain"):
        both = flags.get(what, False)
        for resource in ("volume", "network"):
            if both or flags.get(f"{what}_{resource}", False):
                update[f"{what}_{resource}"] = True
    for allow in ("allow_docker_sock", "allow_privileged", "allow_ssh_agent"):
        if flags.get(allow, False):
            update[allow] = True

    if not update:
        return pipeline
    settings = pipeline.settings.model_copy(update=update)
    return pipeline.model_copy(update={"settings": settings})


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """podline: run container build pipelines against a Docker engine."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("-f", "--file", "file_", default=DEFAULT_FILE, show_default=True, help="Pipeline definition (.yaml, .yml or .py)")
@click.option("--reuse-volume", is_flag=True, help="Use an existing volume and keep it")
@click.option("--remove-volume", is_flag=True, help="Remove an existing volume before the run")
@click.option("--retain-volume", is_flag=True, help="Keep the volume after the run")
@click.option("--reuse-network", is_flag=True, help="Use an existing network and keep it")
@click.option("--remove-network", is_flag=True, help="Remove an existing network before the run")
@click.option("--retain-network", is_flag=True, help="Keep the network after the run")
@click.option("--reuse", is_flag=True, help="Same as --reuse-volume --reuse-network")
@click.option("--remove", is_flag=True, help="Same as --remove-volume --remove-network")
@click.option("--retain", is_flag=True, help="Same as --retain-volume --retain-network")
@click.option("--allow-docker-sock", is_flag=True, help="Allow steps to mount the Docker socket")
@click.option("--allow-privileged", is_flag=True, help="Allow privileged services")
@click.option("--allow-ssh-agent", is_flag=True, help="Allow steps to use the SSH agent")
@click.option(
    "-l",
    "--console-log-level",
    type=click.Choice(list(LEVELS), case_sensitive=False),
    default="NOTICE",
    show_default=True,
    help="Console log level",
)
@click.option("--log-file", default=None, type=click.Path(dir_okay=False), help="Also write every message to this file")
@click.pass_context
def run(ctx, file_, console_log_level, log_file, **flags):
    """Run a pipeline definition."""
    debug = ctx.obj.get("debug", False)
    console = Console(level=console_log_level.upper(), debug=debug, log_file=log_file)

    with console:
        path = Path(file_)
        try:
            pipeline = apply_flags(load_pipeline(path), flags)
        except FileNotFoundError:
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {file_}",
                suggestion="Create podline.yaml or specify a different path:\n  podline run -f my_pipeline.yaml",
            )
            sys.exit(1)
        except PipelineError as e:
            console.print_error("Failed to load pipeline", f"Could not load pipeline from {file_}", details=[str(e)])
            sys.exit(1)
        except Exception as e:
            # workflow files are arbitrary Python
            console.print_error("Failed to load pipeline", f"Could not load pipeline from {file_}")
            console.print_exception(e)
            sys.exit(1)

        try:
            engine = DockerEngine()
        except PipelineError as e:
            console.print_exception(e)
            sys.exit(1)

        try:
            PipelineRunner(engine, console).run(pipeline, name=path.name)
        except KeyboardInterrupt:
            console.print_notice("\nInterrupted by user")
            sys.exit(130)
        except PipelineError:
            # already reported by the runner
            sys.exit(1)
        except Exception as e:
            console.print_exception(e)
            sys.exit(1)
        finally:
            engine.close()


if __name__ == "__main__":
    cli()
