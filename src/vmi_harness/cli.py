"""Command-line interface for vmi-harness.

Usage:
    vmi-harness                            # Run every registered test
    vmi-harness init event_channel_alive   # Run selected tests
    vmi-harness --backend xen --vm win7 --load mytests --channel-factory mytests.kvmi:open_channel
    vmi-harness --list
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from typing import TYPE_CHECKING, NoReturn

import click
from pydantic import ValidationError

import vmi_harness.suite  # noqa: F401  registers the built-in tests
from vmi_harness import __version__
from vmi_harness._logging import configure_logging
from vmi_harness.config import HarnessConfig, backend_kind_from_alias
from vmi_harness.models import TestStatus
from vmi_harness.registry import default_registry
from vmi_harness.runner import HarnessRunner

if TYPE_CHECKING:
    from vmi_harness.event_channel import ChannelFactory
    from vmi_harness.models import TestResult
    from vmi_harness.registry import IntegrationTest

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_TEST_FAILURE = 1
EXIT_CLI_ERROR = 2
EXIT_SETUP_ERROR = 125


def load_object(target: str) -> object:
    """Import "package.module:attribute".

    Raises:
        click.BadParameter: Malformed reference, missing module or attribute
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise click.BadParameter(
            f"Invalid format: '{target}'. Use module:attribute format.",
            param_hint="'--channel-factory'",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"Cannot import {module_name}: {e}", param_hint="'--channel-factory'") from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise click.BadParameter(f"{module_name} has no attribute {attr}", param_hint="'--channel-factory'") from e


def format_status(result: TestResult) -> str:
    """Status word for the "Test <name> ... <status>" line."""
    match result.status:
        case TestStatus.PASSED:
            return click.style("ok", fg="green")
        case TestStatus.TIMED_OUT:
            return click.style("Failed: Timeout", fg="red")
        case TestStatus.SETUP_FAILED:
            return click.style(f"Setup failed: {result.setup_error}", fg="red", bold=True)
        case _:
            return click.style(f"Failed: {result.error}" if result.error else "Failed", fg="red")


def format_results_json(results: list[TestResult]) -> str:
    return json.dumps([result.model_dump(mode="json") for result in results], indent=2)


def exit_code_for(results: list[TestResult]) -> int:
    """0 all clean, 125 any setup failure, 1 any other failure or teardown problem."""
    if any(r.status == TestStatus.SETUP_FAILED for r in results):
        return EXIT_SETUP_ERROR
    if all(r.clean for r in results):
        return EXIT_SUCCESS
    return EXIT_TEST_FAILURE


async def run_tests(
    config: HarnessConfig,
    names: tuple[str, ...],
    channel_factory: ChannelFactory | None,
    json_output: bool,
    quiet: bool,
) -> int:
    """Run the selected tests and report them.

    Returns:
        Exit code to return from CLI
    """
    runner = HarnessRunner(config, channel_factory=channel_factory)

    def on_start(test: IntegrationTest) -> None:
        if not json_output and not quiet:
            click.echo(f"Test {test.name} ... ", nl=False)

    def on_result(result: TestResult) -> None:
        if json_output:
            return
        if quiet:
            if result.clean:
                return
            click.echo(f"Test {result.name} ... ", nl=False)
        click.echo(format_status(result))
        if result.teardown_error is not None:
            click.echo(click.style(f"  teardown failed: {result.teardown_error}", fg="yellow"), err=True)

    results = await runner.run_suite(names or None, on_start=on_start, on_result=on_result)

    if json_output:
        click.echo(format_results_json(results))
    elif not quiet:
        passed = sum(1 for r in results if r.passed)
        colour = "green" if passed == len(results) else "red"
        click.echo(click.style(f"{passed}/{len(results)} passed", fg=colour, dim=True), err=True)

    return exit_code_for(results)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("names", nargs=-1)
@click.option(
    "-b",
    "--backend",
    type=click.Choice(["kvm", "xen", "snapshot-revert", "checkpoint-restore"], case_sensitive=False),
    help="Hypervisor backend [env: TEST_BACKEND]",
)
@click.option("--vm", help="VM name [env: TEST_VM]")
@click.option("--vcpu", type=click.IntRange(min=1), help="vCPU count [env: TEST_VCPU]")
@click.option("-t", "--timeout", type=float, help="Overall test timeout in seconds [env: TEST_TIMEOUT]")
@click.option("--event-timeout", type=click.IntRange(min=0), help="Event wait (ms) [env: TEST_EVENT_TIMEOUT]")
@click.option("--setup-retries", type=click.IntRange(min=0), help="Fresh-session retries on setup failure")
@click.option("--load", "modules", multiple=True, help="Import a module registering tests (repeatable)")
@click.option("--channel-factory", help="Introspection channel factory as module:attribute")
@click.option("--list", "list_only", is_flag=True, help="List registered tests and exit")
@click.option("--json", "json_output", is_flag=True, help="Output results as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Only report failures")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.version_option(__version__, "-V", "--version", prog_name="vmi-harness")
def main(
    names: tuple[str, ...],
    backend: str | None,
    vm: str | None,
    vcpu: int | None,
    timeout: float | None,
    event_timeout: int | None,
    setup_retries: int | None,
    modules: tuple[str, ...],
    channel_factory: str | None,
    list_only: bool,
    json_output: bool,
    quiet: bool,
    verbose: bool,
) -> NoReturn:
    """Run VM introspection integration tests.

    Each test gets a freshly reset VM and the VM is destroyed afterwards,
    whatever the outcome. NAMES selects tests (default: all, in
    registration order).

    Examples:

    \b
      vmi-harness                              # All tests, KVM backend
      TEST_BACKEND=xen vmi-harness init        # One test on Xen
      vmi-harness --load mytests --json | jq .
    """
    configure_logging(level=logging.DEBUG if verbose else None, quiet=quiet)

    for module in modules:
        try:
            importlib.import_module(module)
        except ImportError as exc:
            raise click.UsageError(f"Cannot load test module {module}: {exc}") from exc

    if list_only:
        for name in default_registry.names():
            click.echo(name)
        sys.exit(EXIT_SUCCESS)

    unknown = [name for name in names if name not in default_registry]
    if unknown:
        raise click.UsageError(f"Unknown test(s): {', '.join(unknown)}. Use --list to see registered tests.")

    try:
        factory = load_object(channel_factory) if channel_factory else None
    except click.BadParameter as exc:
        raise click.UsageError(str(exc)) from exc
    if factory is not None and not callable(factory):
        raise click.UsageError(f"Channel factory {channel_factory} is not callable")

    try:
        config = HarnessConfig.from_env(
            backend=backend_kind_from_alias(backend) if backend else None,
            vm_name=vm,
            vcpu_count=vcpu,
            test_timeout_seconds=timeout,
            event_timeout_ms=event_timeout,
            setup_retries=setup_retries,
        )
    except ValidationError as exc:
        raise click.UsageError(f"Invalid configuration:\n{exc}") from exc

    exit_code = asyncio.run(
        run_tests(
            config=config,
            names=names,
            channel_factory=factory,  # type: ignore[arg-type]
            json_output=json_output,
            quiet=quiet,
        )
    )

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
