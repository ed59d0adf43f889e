#!/usr/bin/env python3
"""
Jolokia Agent Manager - Main Application Entry Point
Command line tool for downloading, inspecting and repacking Jolokia agents.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import requests
import structlog

from . import __version__
from .artifacts.archive import ArchiveInspector
from .artifacts.fetcher import ArtifactFetcher, candidate_repositories
from .artifacts.repacker import ArchiveRepacker, RepackRequest
from .artifacts.verifier import SignatureVerifier, VerificationPolicy, VerificationStatus
from .config.config_manager import ConfigManager
from .core.errors import AgentManagerError, MetadataUnavailable, UsageError
from .core.metadata import MetadataStore
from .core.options import DEFAULT_SECURITY_ROLE, Command, ToolOptions
from .core.versions import VersionResolver, parse_artifact_spec

logger = structlog.get_logger()


DEFAULT_AGENT = "war"


def configure_logging(level: str = "INFO", color: bool = True, fmt: str = "console") -> None:
    """
    Configure stdlib logging and structlog for command line use.

    Log records go to stderr so that command output on stdout stays clean.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=color),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


# =============================================================================
# COMMAND LINE PARSING
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jolokia-agent",
        description="Download, inspect and repack Jolokia agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  download            Download an agent (default when no argument is given)
  info <archive>      Show type, version and security setup of an agent
  repack <archive>    Embed/remove a policy, authentication or the JSR-160 proxy

Examples:
  %(prog)s download --agent war:1.2
  %(prog)s jolokia.war
  %(prog)s repack --security-role ops jolokia.war
  %(prog)s repack --policy-file my-access.xml jolokia.war
        """
    )

    parser.add_argument('args', nargs='*', metavar='command/archive',
                        help='Command (download, info, repack) and/or archive')

    group = parser.add_argument_group('download')
    group.add_argument('--agent', metavar='TYPE[:VERSION]',
                       help='Agent type (war, osgi, osgi-bundle, mule, jvm) and optional version')
    group.add_argument('--template', metavar='NAME[:VERSION]',
                       help='Download a policy template instead of an agent')
    group.add_argument('--outdir', default='.', help='Directory to download into')
    group.add_argument('--repository', metavar='URL',
                       help='Use only this repository instead of the configured ones')

    group = parser.add_argument_group('repack')
    group.add_argument('--policy', dest='policy', action='store_const', const=True,
                       help='Embed jolokia-access.xml (or --policy-file) into the agent')
    group.add_argument('--no-policy', dest='policy', action='store_const', const=False,
                       help='Remove an embedded policy')
    group.add_argument('--policy-file', type=Path, metavar='PATH',
                       help='Policy file to embed (implies --policy)')
    group.add_argument('--security', dest='security', action='store_const', const=True,
                       help='Require authentication for the WAR agent')
    group.add_argument('--no-security', dest='security', action='store_const', const=False,
                       help='Remove authentication from the WAR agent')
    group.add_argument('--security-role', metavar='ROLE',
                       help=f'Role required for access (implies --security, default: '
                            f'{DEFAULT_SECURITY_ROLE})')
    group.add_argument('--jsr160-proxy', dest='jsr160_proxy', action='store_const', const=True,
                       help='Enable the JSR-160 proxy in the WAR agent')
    group.add_argument('--no-jsr160-proxy', dest='jsr160_proxy', action='store_const',
                       const=False, help='Disable the JSR-160 proxy in the WAR agent')

    group = parser.add_argument_group('general')
    group.add_argument('--verify', action='store_true',
                       help='Verify the agent signature (info)')
    group.add_argument('--quiet', '-q', action='store_true', help='Only log warnings and errors')
    group.add_argument('--verbose', '-v', action='store_true', help='Log debug output')
    group.add_argument('--no-color', action='store_true', help='Disable colored log output')
    group.add_argument('--no-cache', action='store_true',
                       help='Neither read nor write the local metadata cache')
    group.add_argument('--proxy', metavar='URL', help='HTTP proxy to use')
    group.add_argument('--proxy-user', metavar='USER', help='Proxy user')
    group.add_argument('--proxy-password', metavar='PASSWORD', help='Proxy password')
    group.add_argument('--config', '-c', type=Path, help='Configuration file')
    group.add_argument('--version', action='version',
                       version=f'Jolokia Agent Manager v{__version__}')
    return parser


def parse_options(argv: Optional[List[str]] = None) -> ToolOptions:
    """
    Turn command line arguments into ToolOptions.

    ``info`` is implied by a single argument that is not a command,
    ``download`` by no argument at all.

    Raises:
        UsageError: for unknown commands or conflicting options
    """
    args = build_parser().parse_intermixed_args(argv)

    positional = list(args.args)
    if not positional:
        command, rest = Command.DOWNLOAD, []
    elif positional[0] in Command.names():
        command, rest = Command(positional[0]), positional[1:]
    elif len(positional) == 1:
        command, rest = Command.INFO, positional
    else:
        raise UsageError(f"Unknown command '{positional[0]}'. "
                         f"Valid commands: {', '.join(Command.names())}")

    archive = None
    if command is Command.DOWNLOAD:
        if rest:
            raise UsageError(f"Unexpected argument(s) for download: {' '.join(rest)}")
    elif len(rest) != 1:
        raise UsageError(f"Command '{command.value}' takes exactly one archive argument")
    else:
        archive = Path(rest[0])

    policy = args.policy
    if args.policy_file is not None:
        if policy is False:
            raise UsageError("--policy-file cannot be combined with --no-policy")
        policy = True

    security = args.security
    if args.security_role is not None:
        if security is False:
            raise UsageError("--security-role cannot be combined with --no-security")
        security = True

    if command is not Command.REPACK and any(
            toggle is not None for toggle in (policy, security, args.jsr160_proxy)):
        raise UsageError("Policy, security and proxy options are only valid for 'repack'")

    options = ToolOptions(
        command=command,
        archive=archive,
        agent=args.agent,
        template=args.template,
        outdir=Path(args.outdir),
        repository=args.repository,
        policy=policy,
        policy_file=args.policy_file,
        security=security,
        security_role=args.security_role or DEFAULT_SECURITY_ROLE,
        jsr160_proxy=args.jsr160_proxy,
        verify=args.verify,
        no_cache=args.no_cache,
        proxy=args.proxy,
        proxy_user=args.proxy_user,
        proxy_password=args.proxy_password,
        quiet=args.quiet,
        verbose=args.verbose,
        color=not args.no_color,
        config_path=args.config,
    )
    options.validate()
    return options


# =============================================================================
# APPLICATION
# =============================================================================

class AgentManager:
    """
    Runs one command.

    Components are created lazily so that a command which never touches the
    network (e.g. ``info`` without ``--verify``) does not need metadata.
    """

    def __init__(self, options: ToolOptions, config_manager: ConfigManager,
                 session: Optional[requests.Session] = None):
        self.options = options
        self.config_manager = config_manager
        self.session = session or self._create_session()
        self.timeout = config_manager.get_section('http.timeout', 30)
        self.resolver = VersionResolver()
        self.inspector = ArchiveInspector()
        self._metadata_store: Optional[MetadataStore] = None
        self._verifier: Optional[SignatureVerifier] = None

    def run(self) -> int:
        """Dispatch to the selected command."""
        command = self.options.command
        if command is Command.DOWNLOAD:
            return self.download()
        elif command is Command.INFO:
            return self.info()
        elif command is Command.REPACK:
            return self.repack()
        raise UsageError(f"Unsupported command {command}")

    # -------------------------------------------------------------------------
    # COMMANDS
    # -------------------------------------------------------------------------

    def download(self) -> int:
        options = self.options
        if options.template:
            spec = parse_artifact_spec(options.template)
            metadata = self.metadata_store.load()
            template, version = self.resolver.resolve_template(spec, metadata)
            result = self._fetcher().fetch_template(template, version, options.outdir)
            print(f"Downloaded template {template.name} {version} to {result.local_path}")
            return 0

        spec = parse_artifact_spec(options.agent or DEFAULT_AGENT)
        metadata = self.metadata_store.load()
        agent, version = self.resolver.resolve_agent(spec, metadata)
        repositories = candidate_repositories(
            metadata, version,
            override=options.repository,
            extra=self.config_manager.get_section('repositories.extra', []),
            snapshot_extra=self.config_manager.get_section('repositories.snapshots_extra', []),
        )
        result = self._fetcher().fetch_agent(agent, version, repositories, options.outdir)

        verification = result.verification.status.value if result.verification else "skipped"
        print(f"Downloaded {agent.type} agent {version} to {result.local_path} "
              f"(signature: {verification})")
        return 0

    def info(self) -> int:
        info = self.inspector.inspect(self.options.archive)
        for line in info.report_lines():
            print(line)

        if self.options.verify:
            print(f"Signature:      {self._verify_archive(info.type, info.version)}")
        return 0

    def repack(self) -> int:
        options = self.options
        request = RepackRequest(
            policy=options.policy,
            policy_file=options.resolved_policy_file() if options.policy else None,
            security=options.security,
            security_role=options.security_role,
            jsr160_proxy=options.jsr160_proxy,
        )
        result = ArchiveRepacker(self.inspector).repack(options.archive, request)
        for message in result.messages:
            print(message)
        if not result.changed:
            print(f"{result.path} left unchanged")
        return 0

    # -------------------------------------------------------------------------
    # COMPONENTS
    # -------------------------------------------------------------------------

    @property
    def metadata_store(self) -> MetadataStore:
        if self._metadata_store is None:
            self._metadata_store = MetadataStore(
                self.session,
                self.config_manager.get_section('metadata', {}),
                use_cache=not self.options.no_cache,
                verifier=self.verifier,
                timeout=self.timeout,
            )
        return self._metadata_store

    @property
    def verifier(self) -> SignatureVerifier:
        if self._verifier is None:
            policy = VerificationPolicy.from_config(
                self.config_manager.get_section('verification', {}))
            self._verifier = SignatureVerifier(self.session, policy, timeout=self.timeout)
        return self._verifier

    def _fetcher(self) -> ArtifactFetcher:
        return ArtifactFetcher(self.session, self.verifier, timeout=self.timeout,
                               verification_required=self.verifier.policy.required)

    def _verify_archive(self, agent_type: str, version: Optional[str]) -> str:
        """Verify a local archive; problems are reported, never raised."""
        try:
            metadata = self.metadata_store.load()
        except MetadataUnavailable as e:
            logger.error("Cannot verify, no metadata available", error=str(e))
            return "cannot verify (no metadata available)"

        if version is None or agent_type not in metadata.mapping:
            return "cannot verify (unknown agent type or version)"

        repositories = candidate_repositories(
            metadata, version,
            override=self.options.repository,
            extra=self.config_manager.get_section('repositories.extra', []),
            snapshot_extra=self.config_manager.get_section('repositories.snapshots_extra', []),
        )
        result = self._fetcher().verify_local(self.options.archive,
                                              metadata.mapping[agent_type], version, repositories)
        if result.status is VerificationStatus.VERIFIED:
            return f"verified ({result.method_name})"
        if result.status is VerificationStatus.MISMATCH:
            logger.warning("Signature mismatch", archive=str(self.options.archive),
                           method=result.method_name, detail=result.detail)
            return f"MISMATCH ({result.method_name}: {result.detail})"
        return "unverified (no signature found)"

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        user_agent = (self.config_manager.get_section('http.user_agent')
                      or f"jolokia-agent-manager/{__version__}")
        session.headers['User-Agent'] = user_agent

        proxy = self.config_manager.get_section('http.proxy')
        if proxy:
            user = self.config_manager.get_section('http.proxy_user')
            password = self.config_manager.get_section('http.proxy_password')
            proxy_url = proxy_with_credentials(proxy, user, password)
            session.proxies.update({'http': proxy_url, 'https': proxy_url})
            logger.debug("Using HTTP proxy", proxy=proxy, user=user)
        return session


def proxy_with_credentials(proxy: str, user: Optional[str], password: Optional[str]) -> str:
    """Embed proxy credentials into the proxy URL."""
    if '://' not in proxy:
        proxy = 'http://' + proxy
    if not user:
        return proxy
    parts = urlsplit(proxy)
    credentials = quote(user, safe='')
    if password:
        credentials += ':' + quote(password, safe='')
    host = parts.netloc.rsplit('@', 1)[-1]
    return urlunsplit((parts.scheme, f"{credentials}@{host}", parts.path,
                       parts.query, parts.fragment))


def apply_cli_overrides(options: ToolOptions, config_manager: ConfigManager) -> None:
    """Command line flags take precedence over the configuration file."""
    if options.proxy:
        config_manager.set_value('http.proxy', options.proxy)
        config_manager.set_value('http.proxy_user', options.proxy_user)
        config_manager.set_value('http.proxy_password', options.proxy_password)
    if options.verbose:
        config_manager.set_value('logging.level', 'DEBUG')
    elif options.quiet:
        config_manager.set_value('logging.level', 'WARNING')
    if not options.color:
        config_manager.set_value('logging.color', False)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the Jolokia Agent Manager.

    Returns:
        Process exit code
    """
    try:
        options = parse_options(argv)
    except UsageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    level = 'DEBUG' if options.verbose else 'WARNING' if options.quiet else 'INFO'
    configure_logging(level=level, color=options.color)

    config_manager = ConfigManager(options.config_path)
    if not config_manager.load_config():
        print(f"Error: invalid configuration {config_manager.config_path}", file=sys.stderr)
        return 2

    apply_cli_overrides(options, config_manager)
    configure_logging(
        level=config_manager.get_section('logging.level', 'INFO'),
        color=bool(config_manager.get_section('logging.color', True)),
        fmt=config_manager.get_section('logging.format', 'console'),
    )

    try:
        return AgentManager(options, config_manager).run()
    except AgentManagerError as e:
        logger.debug("Command failed", error=str(e), exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


def cli_main():
    """CLI entry point."""
    return main()


if __name__ == '__main__':
    sys.exit(cli_main())
