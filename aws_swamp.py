#!/usr/bin/env python3
"""
AWS Swamp - MFA session and cross-account role manager
Obtains an MFA-backed session token, assumes a role into a target account and
writes both credential sets to ~/.aws/credentials for other AWS tools to use.
"""

import argparse
import configparser
import logging
import os
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, TextIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv


DEFAULT_PROFILE = "default"
DEFAULT_INTERMEDIATE_PROFILE = "session-token"
DEFAULT_INTERMEDIATE_DURATION = 43200  # 12 hours
DEFAULT_TARGET_DURATION = 3600  # 1 hour
MIN_DURATION = 900
MAX_ROLE_DURATION = 43200
MAX_SESSION_DURATION = 129600  # 36 hours, GetSessionToken upper bound for IAM users
DEFAULT_EXPORT_FILE = Path.home() / ".swamp_profile"
DEFAULT_LOG_DIR = Path.home() / ".aws" / "swamp"

# Custom User-Agent suffix for AWS API calls
BOTO_CONFIG = Config(user_agent_extra='aws-swamp/1.0')

EXPORT_TEMPLATE = "export AWS_PROFILE={profile}\nunset AWS_ACCESS_KEY_ID\nunset AWS_SECRET_ACCESS_KEY\n"

# Global logger
logger = logging.getLogger("aws_swamp")


def load_env():
    """Load SWAMP_* defaults from a .env file in the working directory, if present."""
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)


def setup_logging(debug: bool = False):
    """Configure logging to file and optionally to console in debug mode."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler - only in debug mode
    if debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        logger.addHandler(console_handler)

    log_dir = Path(os.environ.get('SWAMP_LOG_DIR', DEFAULT_LOG_DIR)).expanduser()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"aws_swamp_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        print_warning(f"File logging disabled: {e}")
        return

    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    logger.debug(f"Logging initialized. Log file: {log_file}")


class Colors:
    CYAN = '\033[96m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def print_banner():
    banner = f"""
{Colors.CYAN}{Colors.BOLD}
╔═══════════════════════════════════════════════════════════╗
║           AWS Swamp - MFA Session & Role Manager          ║
╚═══════════════════════════════════════════════════════════╝
{Colors.ENDC}"""
    print(banner)


def print_success(msg: str):
    print(f"{Colors.GREEN}✓ {msg}{Colors.ENDC}")
    logger.info(f"SUCCESS: {msg}")


def print_error(msg: str):
    print(f"{Colors.RED}✗ {msg}{Colors.ENDC}", file=sys.stderr)
    logger.error(msg)


def print_warning(msg: str):
    print(f"{Colors.YELLOW}⚠ {msg}{Colors.ENDC}")
    logger.warning(msg)


def print_info(msg: str):
    print(f"{Colors.BLUE}ℹ {msg}{Colors.ENDC}")
    logger.info(msg)


def format_duration(seconds: int) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    return f"{hours}h {minutes}m"


def default_credentials_file() -> Path:
    """Resolve the shared credentials file the same way the AWS SDKs do."""
    env_path = os.environ.get('AWS_SHARED_CREDENTIALS_FILE')
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".aws" / "credentials"


class SwampError(Exception):
    """Base class for errors that abort a credential exchange."""


class ConfigValidationError(SwampError):
    """Invalid or incomplete configuration; nothing has been contacted yet."""


class ExecutionError(SwampError):
    """The MFA token command could not be launched or exited non-zero."""


class SwampIOError(SwampError):
    """Reading the MFA token or writing the credentials/export file failed."""


class ProviderError(SwampError):
    """An STS call failed (auth, network, throttling, validation)."""

    def __init__(self, message: str, cause: Exception):
        super().__init__(f"{message}: {cause}")
        self.cause = cause
        self.code = None
        if isinstance(cause, ClientError):
            self.code = cause.response.get('Error', {}).get('Code')


@dataclass(frozen=True)
class SwampConfig:
    """Validated command line parameters; never mutated after construction."""
    target_profile: str
    profile: str = DEFAULT_PROFILE
    intermediate_profile: str = DEFAULT_INTERMEDIATE_PROFILE
    region: str = ''
    target_role: str = ''
    account: str = ''
    role: str = ''
    mfa_device: str = ''
    mfa_exec: str = ''
    intermediate_duration: int = DEFAULT_INTERMEDIATE_DURATION
    duration: int = DEFAULT_TARGET_DURATION
    export_profile: bool = False
    export_file: str = ''
    renew: bool = False

    @property
    def uses_mfa(self) -> bool:
        return bool(self.mfa_device)

    @property
    def role_arn(self) -> str:
        """The role to assume: --target-role, or one built from --account and --role."""
        if self.target_role:
            return self.target_role
        if self.account and self.role:
            return f"arn:aws:iam::{self.account}:role/{self.role}"
        return ''

    @property
    def source_profile(self) -> str:
        """Profile whose credentials are used to assume the target role."""
        return self.intermediate_profile if self.uses_mfa else self.profile

    @property
    def renew_interval(self) -> int:
        return self.duration // 2

    def validate(self):
        """Raise ConfigValidationError describing the first invalid parameter."""
        if not self.profile:
            raise ConfigValidationError("Base profile must not be empty")
        if not self.target_profile:
            raise ConfigValidationError("Target profile is required (--target-profile)")
        if self.target_profile == self.profile:
            raise ConfigValidationError("Target profile must differ from the base profile")
        written = [self.target_profile, self.intermediate_profile] if self.uses_mfa else [self.target_profile]
        for name in [self.profile] + written:
            if name == configparser.DEFAULTSECT:
                raise ConfigValidationError(f"Profile name {name} is reserved in the credentials file")
        if not self.role_arn:
            raise ConfigValidationError("Target role is required (--target-role, or --account with --role)")
        if not MIN_DURATION <= self.duration <= MAX_ROLE_DURATION:
            raise ConfigValidationError(
                f"Duration must be between {MIN_DURATION} and {MAX_ROLE_DURATION} seconds, got {self.duration}")

        if self.uses_mfa:
            if not self.intermediate_profile:
                raise ConfigValidationError("Intermediate profile is required when an MFA device is set")
            if self.intermediate_profile in (self.profile, self.target_profile):
                raise ConfigValidationError(
                    "Intermediate profile must differ from the base and target profiles")
            if not MIN_DURATION <= self.intermediate_duration <= MAX_SESSION_DURATION:
                raise ConfigValidationError(
                    f"Intermediate duration must be between {MIN_DURATION} and {MAX_SESSION_DURATION} "
                    f"seconds, got {self.intermediate_duration}")

        if self.export_profile and not self.export_file:
            raise ConfigValidationError("Export file is required when exporting the profile")
        if self.renew and self.renew_interval <= 0:
            raise ConfigValidationError("Duration is too short to renew credentials")


@dataclass(frozen=True)
class Credentials:
    """A temporary credential set as returned by STS."""
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: Optional[datetime] = None

    @classmethod
    def from_sts(cls, data: Dict) -> 'Credentials':
        return cls(
            access_key_id=data['AccessKeyId'],
            secret_access_key=data['SecretAccessKey'],
            session_token=data['SessionToken'],
            expiration=data.get('Expiration'),
        )


def clean_token_code(token_code: str) -> str:
    return token_code.strip()


def fetch_token_code(serial_number: str, command: str) -> str:
    """Run the configured MFA command through the shell and return its stdout.

    Raises:
        ExecutionError: if the command cannot be launched or exits non-zero.
    """
    print_info(f"Obtaining mfa token for: {serial_number}")
    logger.debug(f"Running mfa command: {command}")
    try:
        result = subprocess.run(['/bin/sh', '-c', command], capture_output=True, encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise ExecutionError(f"Error obtaining mfa token: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.strip()
        logger.debug(f"mfa command stderr: {stderr}")
        message = f"Error obtaining mfa token: command exited with status {result.returncode}"
        raise ExecutionError(f"{message}: {stderr}" if stderr else message)
    return result.stdout


def ask_for_token_code(serial_number: str, stream: Optional[TextIO] = None) -> str:
    """Prompt for the MFA token and read one line from stream (stdin by default).

    Raises:
        SwampIOError: on a read error or end of input.
    """
    stream = stream if stream is not None else sys.stdin
    print(f"{Colors.YELLOW}Enter mfa token for {serial_number}: {Colors.ENDC}", end='', flush=True)
    try:
        line = stream.readline()
    except (OSError, UnicodeDecodeError) as e:
        raise SwampIOError(f"Error reading mfa token: {e}") from e
    if not line:
        raise SwampIOError("Error reading mfa token: unexpected end of input")
    return line


def get_token_code(serial_number: str, mfa_exec: str = '', stream: Optional[TextIO] = None) -> str:
    """Obtain the current MFA code from mfa_exec, or interactively when it is empty."""
    if mfa_exec:
        token_code = fetch_token_code(serial_number, mfa_exec)
    else:
        token_code = ask_for_token_code(serial_number, stream)
    return clean_token_code(token_code)


def role_session_name(caller_arn: str) -> str:
    """Name the assumed-role session after the caller, e.g. .../user/alice -> alice."""
    return caller_arn.split('/')[-1]


class StsProvider:
    """STS calls used by the credential exchange.

    A new boto3 session is built for every call so that profiles rewritten
    earlier in the same cycle are read back from disk.
    """

    def __init__(self, boto_config: Config = BOTO_CONFIG):
        self.boto_config = boto_config

    def _session(self, profile: str, region: str) -> boto3.Session:
        return boto3.Session(profile_name=profile, region_name=region or None)

    def _sts(self, profile: str, region: str):
        return self._session(profile, region).client('sts', config=self.boto_config)

    def validate_session(self, profile: str, region: str) -> bool:
        """Return True if the profile's cached credentials can call GetCallerIdentity."""
        try:
            self._sts(profile, region).get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            logger.debug(f"Session for profile {profile} is not valid: {e}")
            return False
        return True

    def get_session_token(self, profile: str, region: str, serial_number: str,
                          token_code: str, duration: int) -> Credentials:
        logger.debug(f"Requesting session token for profile={profile}, mfa_serial={serial_number}, "
                     f"duration={duration}s")
        try:
            response = self._sts(profile, region).get_session_token(
                DurationSeconds=duration,
                SerialNumber=serial_number,
                TokenCode=token_code,
            )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError("Error getting session token", e) from e

        logger.debug(f"Session token obtained, expires: {response['Credentials'].get('Expiration')}")
        return Credentials.from_sts(response['Credentials'])

    def get_caller_identity(self, profile: str, region: str) -> Dict:
        try:
            return self._sts(profile, region).get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise ProviderError("Error fetching caller id", e) from e

    def assume_role(self, profile: str, region: str, role_arn: str,
                    session_name: str, duration: int) -> Credentials:
        logger.debug(f"Assuming role {role_arn} as {session_name} from profile={profile}, duration={duration}s")
        try:
            response = self._sts(profile, region).assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=duration,
            )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError("Error assuming role", e) from e

        logger.debug(f"Role assumed, expires: {response['Credentials'].get('Expiration')}")
        return Credentials.from_sts(response['Credentials'])

    def session_region(self, profile: str, region: str) -> Optional[str]:
        """Region a session for profile resolves to (explicit region, then profile config)."""
        try:
            return self._session(profile, region).region_name
        except BotoCoreError as e:
            raise ProviderError("Error creating session", e) from e


class ProfileWriter:
    """Writes named credential sets into the shared credentials file.

    Sections other than the one being written are preserved as-is. Each write
    goes to a temporary file beside the target which then replaces it, so
    readers never see a partially written file.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else default_credentials_file()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self.path.touch(mode=0o600)
            with open(self.path, 'a'):
                pass
        except OSError as e:
            raise SwampIOError(f"Error initializing profile writer for {self.path}: {e}") from e
        # rewrites go through a temporary file beside the target
        if not os.access(self.path.parent, os.W_OK):
            raise SwampIOError(
                f"Error initializing profile writer for {self.path}: directory {self.path.parent} is not writable")
        logger.debug(f"Profile writer using {self.path}")

    def _load(self) -> configparser.ConfigParser:
        credentials = configparser.ConfigParser(interpolation=None)
        credentials.optionxform = str
        try:
            credentials.read(self.path)
        except (OSError, UnicodeDecodeError, configparser.Error) as e:
            raise SwampIOError(f"Error reading {self.path}: {e}") from e
        return credentials

    def _save(self, credentials: configparser.ConfigParser):
        try:
            fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials.", suffix=".tmp")
        except OSError as e:
            raise SwampIOError(f"Error writing {self.path}: {e}") from e
        try:
            with os.fdopen(fd, 'w') as f:
                credentials.write(f)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                logger.debug(f"Could not remove temporary file {temp_path}")
            raise SwampIOError(f"Error writing {self.path}: {e}") from e

    def write_profile(self, credentials: Credentials, profile: str, region: Optional[str] = None):
        """Create or replace the profile section with the given credentials and region."""
        config = self._load()
        if not config.has_section(profile):
            try:
                config.add_section(profile)
            except ValueError as e:
                raise SwampIOError(f"Error writing profile {profile}: {e}") from e

        config.set(profile, 'aws_access_key_id', credentials.access_key_id)
        config.set(profile, 'aws_secret_access_key', credentials.secret_access_key)
        config.set(profile, 'aws_session_token', credentials.session_token)
        if region:
            config.set(profile, 'region', region)
        else:
            config.remove_option(profile, 'region')

        self._save(config)
        logger.info(f"Wrote profile {profile} (key {credentials.access_key_id[:8]}...) to {self.path}")


def export_activation(target_profile: str, path) -> None:
    """Overwrite path with a shell snippet selecting target_profile and dropping raw keys."""
    path = Path(path).expanduser()
    try:
        with open(path, 'w') as f:
            f.write(EXPORT_TEMPLATE.format(profile=target_profile))
    except OSError as e:
        raise SwampIOError(f"Error writing target profile to export file: {e}") from e
    logger.info(f"Exported profile {target_profile} to {path}")


class State(Enum):
    NEEDS_INTERMEDIATE = 'needs-intermediate'
    HAS_INTERMEDIATE = 'has-intermediate'
    ASSUMING_ROLE = 'assuming-role'
    EXPORTED = 'exported'
    SLEEPING = 'sleeping'
    DONE = 'done'


class CredentialExchange:
    """Drives the MFA session / assume role cycle and its optional renewal loop.

    The provider is any object exposing the StsProvider methods; token_source
    and sleep are injectable so the loop can run without a terminal or clock.
    """

    def __init__(self, config: SwampConfig, provider, writer: ProfileWriter,
                 token_source: Callable[[str, str], str] = get_token_code,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.provider = provider
        self.writer = writer
        self.token_source = token_source
        self.sleep = sleep
        self.state = self._initial_state()

    def _initial_state(self) -> State:
        return State.NEEDS_INTERMEDIATE if self.config.uses_mfa else State.ASSUMING_ROLE

    def _transition(self, state: State):
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    def ensure_session_token_profile(self) -> bool:
        """Refresh the intermediate profile unless its session is still valid.

        Returns:
            True if a new session token was written, False if the existing one was kept.
        """
        config = self.config
        if self.provider.validate_session(config.intermediate_profile, config.region):
            print_success(f"Session token for profile {config.intermediate_profile} is still valid")
            return False

        token_code = self.token_source(config.mfa_device, config.mfa_exec)
        print_info(f"Requesting session token for {format_duration(config.intermediate_duration)}...")
        credentials = self.provider.get_session_token(
            config.profile, config.region, config.mfa_device, token_code, config.intermediate_duration)
        self.writer.write_profile(credentials, config.intermediate_profile, config.region)
        print_success(f"Session token written to profile {config.intermediate_profile}")
        return True

    def ensure_target_profile(self) -> Credentials:
        """Assume the target role from the authoritative profile and write the target profile."""
        config = self.config
        source_profile = config.source_profile

        identity = self.provider.get_caller_identity(source_profile, config.region)
        session_name = role_session_name(identity['Arn'])
        logger.debug(f"Caller {identity['Arn']} assumes {config.role_arn} as {session_name}")

        credentials = self.provider.assume_role(
            source_profile, config.region, config.role_arn, session_name, config.duration)
        region = self.provider.session_region(source_profile, config.region) or config.region
        self.writer.write_profile(credentials, config.target_profile, region)
        print_success(f"Assumed {config.role_arn}, credentials written to profile {config.target_profile}")
        return credentials

    def run_cycle(self):
        """One pass: intermediate session (if MFA), role assumption, export."""
        if self.state is not self._initial_state():
            self._transition(self._initial_state())

        if self.state is State.NEEDS_INTERMEDIATE:
            self.ensure_session_token_profile()
            self._transition(State.HAS_INTERMEDIATE)

        self._transition(State.ASSUMING_ROLE)
        self.ensure_target_profile()

        if self.config.export_profile:
            export_activation(self.config.target_profile, self.config.export_file)
            self._transition(State.EXPORTED)

    def run(self):
        """Run cycles until done; with renew set this only returns on error."""
        while True:
            self.run_cycle()
            if not self.config.renew:
                self._transition(State.DONE)
                return

            self._transition(State.SLEEPING)
            interval = self.config.renew_interval
            print_info(f"Renewing credentials in {format_duration(interval)}")
            self.sleep(interval)


def build_parser() -> argparse.ArgumentParser:
    """Command line flags; defaults may come from SWAMP_* environment variables."""
    env = os.environ.get
    parser = argparse.ArgumentParser(
        prog='aws-swamp',
        description='AWS Swamp - Obtain an MFA session token and assume a role into a target account',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --target-profile prod --account 123456789012 --role admin
  %(prog)s --target-profile prod --target-role arn:aws:iam::123456789012:role/admin \\
      --mfa-device arn:aws:iam::210987654321:mfa/alice
  %(prog)s --target-profile prod --account 123456789012 --role admin \\
      --mfa-device arn:aws:iam::210987654321:mfa/alice --mfa-exec 'ykman oath accounts code -s aws' \\
      --export-profile --renew
        """
    )

    parser.add_argument('--profile', default=env('SWAMP_PROFILE', DEFAULT_PROFILE),
                        help='Base profile with long-term credentials (default: %(default)s)')
    parser.add_argument('--target-profile', default=env('SWAMP_TARGET_PROFILE', ''),
                        help='Profile to write the assumed role credentials to')
    parser.add_argument('--target-role', default=env('SWAMP_TARGET_ROLE', ''),
                        help='ARN of the role to assume')
    parser.add_argument('--account', default=env('SWAMP_ACCOUNT', ''),
                        help='Target account id, used with --role instead of --target-role')
    parser.add_argument('--role', default=env('SWAMP_ROLE', ''),
                        help='Target role name, used with --account instead of --target-role')
    parser.add_argument('--intermediate-profile',
                        default=env('SWAMP_INTERMEDIATE_PROFILE', DEFAULT_INTERMEDIATE_PROFILE),
                        help='Profile to write the MFA session token to (default: %(default)s)')
    parser.add_argument('--intermediate-duration', type=int,
                        default=env('SWAMP_INTERMEDIATE_DURATION', str(DEFAULT_INTERMEDIATE_DURATION)),
                        help='Session token duration in seconds (default: %(default)s)')
    parser.add_argument('--duration', type=int,
                        default=env('SWAMP_DURATION', str(DEFAULT_TARGET_DURATION)),
                        help='Assumed role duration in seconds (default: %(default)s)')
    parser.add_argument('--region', default=env('SWAMP_REGION', ''),
                        help='AWS region (default: region of the profile)')
    parser.add_argument('--mfa-device', default=env('SWAMP_MFA_DEVICE', ''),
                        help='MFA device serial/ARN; without it no session token is requested')
    parser.add_argument('--mfa-exec', default=env('SWAMP_MFA_EXEC', ''),
                        help='Shell command printing the MFA token; prompts when empty')
    parser.add_argument('--export-profile', action='store_true',
                        help='Write a shell snippet activating the target profile')
    parser.add_argument('--export-file', default=env('SWAMP_EXPORT_FILE', str(DEFAULT_EXPORT_FILE)),
                        help='Where to write the activation snippet (default: %(default)s)')
    parser.add_argument('--renew', action='store_true',
                        help='Keep running and renew credentials every duration/2 seconds')
    parser.add_argument('--credentials-file', default=None,
                        help='Credentials file to write (default: AWS_SHARED_CREDENTIALS_FILE or ~/.aws/credentials)')
    parser.add_argument('-q', '--quiet', action='store_true', help='Minimal output')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode with verbose logging')
    return parser


def config_from_args(args: argparse.Namespace) -> SwampConfig:
    return SwampConfig(
        profile=args.profile,
        target_profile=args.target_profile,
        intermediate_profile=args.intermediate_profile,
        region=args.region,
        target_role=args.target_role,
        account=args.account,
        role=args.role,
        mfa_device=args.mfa_device,
        mfa_exec=args.mfa_exec,
        intermediate_duration=args.intermediate_duration,
        duration=args.duration,
        export_profile=args.export_profile,
        export_file=args.export_file,
        renew=args.renew,
    )


def main(argv=None) -> int:
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug)
    logger.info("AWS Swamp started")
    logger.debug(f"Arguments: {vars(args)}")

    config = config_from_args(args)
    try:
        config.validate()
    except ConfigValidationError as e:
        print_error(str(e))
        parser.print_usage(sys.stderr)
        return 1

    if not args.quiet:
        print_banner()

    try:
        writer = ProfileWriter(args.credentials_file)
        exchange = CredentialExchange(config, StsProvider(), writer)
        exchange.run()
    except SwampError as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        print_warning("\nCancelled by user")
        return 130

    logger.info("Completed")
    return 0


if __name__ == '__main__':
    sys.exit(main())
