"""CLI for the prana biofeedback processing core."""

import asyncio
import json
import logging
from dataclasses import asdict

import click

from prana.config import Baseline, ProcessingConfig
from prana.errors import ConfigValidationError


def _load_config(path: str | None) -> ProcessingConfig:
    try:
        return ProcessingConfig.from_file(path) if path else ProcessingConfig()
    except ConfigValidationError as e:
        raise click.ClickException(f"Invalid config: {e}") from e
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Config is not valid JSON: {e}") from e


def _parse_bursts(bursts: tuple[str, ...]) -> list[tuple[float, float]]:
    out = []
    for burst in bursts:
        try:
            start, end = (float(x) for x in burst.split(":"))
        except ValueError:
            raise click.BadParameter(f"expected START:END in seconds, got {burst!r}", param_hint="--motion")
        out.append((start, end))
    return out


def _echo_event(event, as_json: bool) -> None:
    if as_json:
        click.echo(event.to_json())
    else:
        click.echo(f"  {event!r}")


def _synthetic_sources(heart_rate, breathing_rate, noise, seed, bursts, spo2_ratio):
    from prana.sources import SyntheticBreathSource, SyntheticMotionSource, SyntheticPulseSource

    sources = [
        SyntheticPulseSource(
            heart_rate_bpm=heart_rate,
            noise=noise,
            seed=seed,
            rsa_depth=0.05,
            breathing_rate_bpm=breathing_rate,
            spo2_ratio=spo2_ratio,
        ),
        SyntheticBreathSource(breathing_rate_bpm=breathing_rate, noise=noise / 20.0, seed=seed + 1),
    ]
    if bursts:
        sources.append(SyntheticMotionSource(bursts=bursts, seed=seed + 2))
    return sources


def _synthetic_options(f):
    f = click.option("--seed", default=0, help="Random seed for the synthetic noise.")(f)
    f = click.option("--spo2-ratio", default=None, type=float,
                     help="Emit two colour channels with this ratio-of-ratios.")(f)
    f = click.option("--motion", "bursts", multiple=True, metavar="START:END",
                     help="Add an accelerometer with a motion burst (repeatable).")(f)
    f = click.option("--noise", default=0.2, help="Pulse noise (pixel units).")(f)
    f = click.option("--breathing-rate", "-b", default=12.0, help="Breaths per minute.")(f)
    f = click.option("--heart-rate", "-r", default=72.0, help="Heart rate in bpm.")(f)
    f = click.option("--duration", "-d", default=60.0, help="Duration in seconds.")(f)
    return f


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def main(verbose: bool) -> None:
    """prana: biofeedback signal processing and sensor fusion."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@_synthetic_options
@click.option("--config", "-c", "config_path", default=None, type=click.Path(exists=True),
              help="ProcessingConfig JSON file.")
@click.option("--realtime", is_flag=True, help="Tick on the wall clock instead of as fast as possible.")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines.")
@click.option("--quiet", "-q", is_flag=True, help="Only print the final summary.")
def simulate(
    duration: float,
    heart_rate: float,
    breathing_rate: float,
    noise: float,
    bursts: tuple[str, ...],
    spo2_ratio: float | None,
    seed: int,
    config_path: str | None,
    realtime: bool,
    as_json: bool,
    quiet: bool,
) -> None:
    """Run a session on synthetic pulse / breath / motion signals."""
    from prana.replay import run_offline
    from prana.session import ManualClock, MonitoringSession

    config = _load_config(config_path)
    sources = _synthetic_sources(
        heart_rate, breathing_rate, noise, seed, _parse_bursts(bursts), spo2_ratio
    )

    if realtime:
        session = MonitoringSession(config=config, sources=sources)
        if not quiet:
            session.subscribe(lambda event: _echo_event(event, as_json))
        try:
            aggregate = asyncio.run(session.run(duration=duration))
        except KeyboardInterrupt:
            aggregate = session.stop()
            click.echo("\nStopped.")
    else:
        clock = ManualClock()
        session = MonitoringSession(config=config, sources=sources, clock=clock)
        events = run_offline(session, clock, duration)
        if not quiet:
            for event in events:
                _echo_event(event, as_json)
        aggregate = session.stop()

    if aggregate is not None:
        click.echo("\n--- Session Summary ---")
        click.echo(aggregate.to_json(indent=2))


@main.command()
@_synthetic_options
@click.option("--output", "-o", required=True, type=click.Path(), help="Output .jsonl file.")
def record(
    duration: float,
    heart_rate: float,
    breathing_rate: float,
    noise: float,
    bursts: tuple[str, ...],
    spo2_ratio: float | None,
    seed: int,
    output: str,
) -> None:
    """Write a synthetic sample recording for later replay."""
    from prana.replay import record_sources, write_recording

    sources = _synthetic_sources(
        heart_rate, breathing_rate, noise, seed, _parse_bursts(bursts), spo2_ratio
    )
    count = write_recording(output, record_sources(sources, duration))
    click.echo(f"Wrote {count} samples to {output}")


@main.command()
@click.argument("file", type=click.Path(exists=True))
@click.option("--config", "-c", "config_path", default=None, type=click.Path(exists=True),
              help="ProcessingConfig JSON file.")
@click.option("--output", "-o", default=None, help="Write all events as JSON to this file.")
@click.option("--show-events", is_flag=True, help="Print every event.")
def replay(file: str, config_path: str | None, output: str | None, show_events: bool) -> None:
    """Replay a JSONL sample recording through the pipeline."""
    from prana.replay import replay_file

    config = _load_config(config_path)
    events, aggregate = replay_file(file, config=config)

    if show_events:
        for event in events:
            _echo_event(event, as_json=False)

    if output:
        with open(output, "w") as out:
            json.dump([e.to_dict() for e in events], out, indent=2)
        click.echo(f"Events written to {output}")

    if aggregate is None:
        raise click.ClickException(f"No samples in {file}")
    click.echo("\n--- Session Summary ---")
    click.echo(aggregate.to_json(indent=2))


@main.command("config")
@click.argument("file", required=False, type=click.Path(exists=True))
@click.option("--baseline", nargs=3, type=float, default=None,
              metavar="HR RMSSD BR", help="Validate a stress baseline as well.")
def show_config(file: str | None, baseline: tuple[float, float, float] | None) -> None:
    """Validate a config file (or show the defaults) as JSON."""
    config = _load_config(file)
    data = {"config": config.to_dict()}
    if baseline:
        try:
            b = Baseline(*baseline)
            b.validate()
        except ConfigValidationError as e:
            raise click.ClickException(f"Invalid baseline: {e}") from e
        data["baseline"] = asdict(b)
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    main()
