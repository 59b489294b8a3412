"""CLI entry-point for the security responder job."""

from __future__ import annotations

import logging
import sys

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from rke2_security_responder import __version__
from rke2_security_responder.cluster import ClusterClient
from rke2_security_responder.collector import CollectionError, Collector
from rke2_security_responder.config import ENV_DISABLE, Settings
from rke2_security_responder.context import OperationCancelled, RunContext
from rke2_security_responder.reporter import DeliveryError, Reporter

logger = logging.getLogger("rke2_security_responder")

console = Console(stderr=True)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _build_settings(**overrides: object) -> Settings:
    """Env-derived settings with non-empty CLI values layered on top."""
    return Settings(**{k: v for k, v in overrides.items() if v not in (None, "")})


def run(settings: Settings) -> int:
    """Collect once and deliver once; return the process exit status."""
    logger.info("Starting security responder version=%s", __version__)

    if settings.disabled:
        logger.info("Security check disabled via %s", ENV_DISABLE)
        return 0

    ctx = RunContext(timeout=settings.run_timeout)
    client = ClusterClient(
        kubeconfig=settings.kubeconfig,
        context=settings.kube_context,
        timeout=settings.kubectl_timeout,
        ctx=ctx,
    )

    try:
        facts = Collector(client, settings.mode, ctx=ctx).collect()
    except (CollectionError, OperationCancelled) as exc:
        logger.error("Fatal: collect data: %s", exc)
        return 1

    if settings.dry_run:
        logger.info("Debug mode: skipping send")
        console.print(Panel("Collected payload", style="bold cyan"))
        console.print_json(facts.to_json())
        return 0

    with Reporter(
        settings.endpoint,
        timeout=settings.request_timeout,
        max_attempts=settings.max_attempts,
        retry_delay=settings.retry_delay,
        ctx=ctx,
    ) as reporter:
        try:
            response = reporter.send(facts)
        except (DeliveryError, OperationCancelled) as exc:
            logger.warning("Failed to send (expected in disconnected environments): %s", exc)
            return 0

    if response is None:
        logger.info("Endpoint acknowledged without a usable reply")
        return 0
    for version in response.versions:
        logger.info("Available version %s released %s", version.name, version.release_date)
    if response.request_interval_in_minutes:
        logger.info("Suggested check interval %d minutes", response.request_interval_in_minutes)
    return 0


@click.command()
@click.version_option(version=__version__, prog_name="security-responder")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option("--debug", "dry_run", is_flag=True, help="Dry-run: collect data but don't send.")
@click.option(
    "--mode",
    default="",
    help="Collection mode: recommended or minimal (or set SECURITY_RESPONDER_MODE).",
)
@click.option(
    "--endpoint", default="", help="Endpoint URL (or set SECURITY_RESPONDER_ENDPOINT)."
)
@click.option("--kubeconfig", default="", help="Path to kubeconfig file (default: in-cluster).")
@click.option("--context", "kube_context", default="", help="Kubernetes context to use.")
@click.option(
    "--timeout",
    "run_timeout",
    default=None,
    type=float,
    help="Overall run deadline in seconds (default: 300).",
)
def main(
    verbose: bool,
    dry_run: bool,
    mode: str,
    endpoint: str,
    kubeconfig: str,
    kube_context: str,
    run_timeout: float | None,
) -> None:
    """Report cluster composition to the RKE2 security responder endpoint."""
    _configure_logging(verbose)

    try:
        settings = _build_settings(
            verbose=verbose,
            dry_run=dry_run,
            mode=mode,
            endpoint=endpoint,
            kubeconfig=kubeconfig,
            kube_context=kube_context,
            run_timeout=run_timeout,
        )
    except ValidationError as exc:
        console.print(f"[red bold]Error:[/red bold] invalid configuration\n{exc}")
        sys.exit(1)

    sys.exit(run(settings))


if __name__ == "__main__":
    main()
