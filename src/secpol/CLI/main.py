"""
Command Line Interface for SecPol.
"""
import logging
import shlex
import sys

import click
from dotenv import load_dotenv

from ..BUILDERS.policy_builder import PolicyBuilder
from ..CONVERTERS.layer_hasher import CanonicalTarHasher, CommandLayerHasher
from ..errors import ConfigurationError, SecPolError
from ..MODELS.tool_config import ToolConfig
from ..PARSERS.config_parser import DEFAULT_CONFIG_PATH, ConfigParser
from ..PARSERS.policy_spec_parser import PolicySpecParser
from ..REGISTRY.registry_client import RegistryClient


def _check_platform(ctx, param, value):
    parts = value.split("/")
    if len(parts) not in (2, 3) or not all(parts):
        raise click.BadParameter("expected os/arch or os/arch/variant")
    return value


def _make_hasher(hasher_command):
    if not hasher_command:
        return CanonicalTarHasher()
    try:
        argv = shlex.split(hasher_command)
    except ValueError as e:
        raise ConfigurationError(f"Invalid --hasher-command: {e}", {"command": hasher_command}) from e
    if not argv:
        raise ConfigurationError("Invalid --hasher-command: no program given")
    return CommandLayerHasher(argv)


@click.command()
@click.option('--config', '-c', 'spec_path', required=True,
              type=click.Path(dir_okay=False),
              help='Policy specification (.json, or .toml for TOML)')
@click.option('--json', '-j', 'print_json', is_flag=True,
              help='Also print the policy JSON before the base64 line')
@click.option('--internal-config', default=DEFAULT_CONFIG_PATH, show_default=True,
              envvar='SECPOL_INTERNAL_CONFIG',
              help='Tool configuration with default containers, env rules and mounts')
@click.option('--platform', default='linux/amd64', show_default=True,
              envvar='SECPOL_PLATFORM', callback=_check_platform,
              help='Platform selected from multi-platform images')
@click.option('--cache-dir', default=None, envvar='SECPOL_CACHE_DIR',
              help='Cache verified layer blobs in this directory')
@click.option('--jobs', type=click.IntRange(min=1), default=1, show_default=True,
              help='Layers hashed concurrently per image')
@click.option('--hasher-command', default=None, envvar='SECPOL_HASHER_COMMAND',
              help='External tool reading a layer tar on stdin and printing its root digest')
@click.option('--timeout', type=float, default=60.0, show_default=True,
              help='Registry socket timeout in seconds (0 to wait forever)')
@click.option('--retries', type=click.IntRange(min=1), default=3, show_default=True,
              help='Attempts per registry request on transient failures')
@click.option('--verbose', '-v', is_flag=True, help='Log progress to stderr')
def cli(spec_path, print_json, internal_config, platform, cache_dir, jobs,
        hasher_command, timeout, retries, verbose):
    """
    SecPol - compile a container group into a confidential-container
    security policy.

    Prints the base64 encoded policy on stdout. Any error prints a single
    diagnostic on stderr and exits with status 1.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        stream=sys.stderr,
        format='%(levelname)s %(name)s: %(message)s',
    )

    try:
        spec = PolicySpecParser().parse(spec_path)
        # The open-door policy needs no configuration.
        config = ToolConfig() if spec.allow_all else ConfigParser().parse(internal_config)

        registry = RegistryClient(
            platform=platform,
            cache_dir=cache_dir,
            timeout=timeout or None,
            retries=retries,
        )
        hasher = _make_hasher(hasher_command)
        builder = PolicyBuilder(config, registry, hasher=hasher, jobs=jobs)

        policy = builder.build(spec)
        text = policy.to_json()
        encoded = policy.to_base64()
    except (SecPolError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if print_json:
        click.echo(text)
    click.echo(encoded)


def main():
    """
    Main entry point for the CLI.
    """
    load_dotenv()
    cli()


if __name__ == '__main__':
    main()
