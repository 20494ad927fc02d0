#!/usr/bin/env python3
# Script: accountmatic.py
#
# What this does:
# - Read a list of "username;group1,group2" records
# - Create local users if missing, set a random password, store it in a 0600 file
# - Create the same-named primary group and any requested groups, add memberships
# - Lock the home directory down to its owner (every run, new or existing users)
# - Logs to /var/log/accountmatic/activity.log and the terminal

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import fcntl
import logging
import os
import re
import secrets
import shutil
import signal
import stat
import string
import subprocess
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Mapping, Protocol

# Third-party
from colorama import Fore, Style

#=================#
# Global Settings #
#=================#

VERSION = "1.0.0"
MIN_PYTHON_VERSION = (3, 10)

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
LOG_FILE = "/var/log/accountmatic/activity.log"
CRED_FILE = "/var/lib/accountmatic/credentials.csv"
LOCK_PATH = "/run/accountmatic.lock"
ENV_FILE = "/etc/accountmatic.env"
KEY_FILE = "/etc/accountmatic.key"
ENC_KEY_ENV = "ACCOUNTMATIC_ENC_KEY"

DEFAULT_SHELL = "/bin/bash"
PASSWORD_LENGTH = 24                # 24 * log2(73) ~ 148 bits
MIN_PASSWORD_LENGTH = 16            # Floor, keeps us above 12 bytes of entropy
FORCE_PASSWORD_CHANGE = True        # chage -d 0 after the password is stored
HOME_MODE = 0o700
UID_MIN = 1000                      # Existing accounts below this are never touched
ADMIN_REQUIRED = True
NAME_REGEX = r"^[a-z_][a-z0-9_-]*[$]?$"
NAME_MAXLEN = 32

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^*-_=+"

RECORD_DELIMITER = ";"
GROUP_DELIMITER = ","

# System/builtin users we never manage
RESERVED_USERS = {
    "root","daemon","bin","sys","sync","games","man","lp","mail","news",
    "uucp","proxy","www-data","backup","list","irc","gnats","nobody"
}

LOG_FORMAT = "%(asctime)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOGGER_NAME = "accountmatic"

USAGE = "Usage: accountmatic.py <input-file>  (one 'username;group1,group2' record per line)"

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "useradd":  "/usr/sbin/useradd",
  "usermod":  "/usr/sbin/usermod",
  "groupadd": "/usr/sbin/groupadd",
  "chpasswd": "/usr/sbin/chpasswd",
  "chage":    "/usr/bin/chage",
  "getent":   "/usr/bin/getent",
}

# Same shape the installer writes: NAME=value, NAME='value', NAME="value", trailing comment
ENV_ASSIGN_RE = re.compile(r"""^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^\s#]+))?\s*(?:#.*)?$""")

#============#
# Exceptions #
#============#

class AccountmaticError(Exception):
    """Base for everything this tool raises on purpose."""


class UsageError(AccountmaticError):
    """No usable input file. Fatal before any record is processed."""


class PrecursorError(AccountmaticError):
    """Secure storage (or the run lock) could not be established. Fatal."""


class RecordParseError(AccountmaticError):
    def __init__(self, lineno: int, reason: str):
        super().__init__(f"line {lineno}: {reason}")
        self.lineno = lineno
        self.reason = reason


class RecordError(AccountmaticError):
    """Per-record failure. The batch moves on to the next record."""

    def __init__(self, principal: str, message: str):
        super().__init__(message)
        self.principal = principal


class AccountCreationError(RecordError):
    pass


class ProtectedAccountError(AccountCreationError):
    pass


class GroupCreationError(RecordError):
    pass


class MembershipError(RecordError):
    pass


class OwnershipError(RecordError):
    pass


class CredentialStoreError(RecordError):
    pass

#=================#
# Data model      #
#=================#

@dataclass(frozen=True)
class ProvisioningRecord:
    username: str
    groups: tuple[str, ...] = ()
    lineno: int = 0
    blank_tokens: int = 0       # Empty group tokens dropped while parsing


@dataclass(frozen=True)
class AccountState:
    exists: bool
    uid: int | None = None
    home: str | None = None


@dataclass
class ProvisioningResult:
    username: str
    created: bool = False
    groups_created: list[str] = field(default_factory=list)
    memberships: list[str] = field(default_factory=list)
    home_secured: bool = False
    failed_phase: str | None = None
    error: RecordError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    processed: int = 0
    created: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    interrupted: bool = False


@dataclass(frozen=True)
class Settings:
    log_file: str = LOG_FILE
    cred_file: str = CRED_FILE
    lock_path: str = LOCK_PATH
    default_shell: str = DEFAULT_SHELL
    password_length: int = PASSWORD_LENGTH
    force_password_change: bool = FORCE_PASSWORD_CHANGE
    home_mode: int = HOME_MODE
    uid_min: int = UID_MIN
    admin_required: bool = ADMIN_REQUIRED
    name_regex: str = NAME_REGEX
    enc_key: str | None = None

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    v = environ.get(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Blank counts as unset.
def _env_str(environ: Mapping[str, str], name: str, default: str) -> str:
    v = environ.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()

def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    v = environ.get(name, "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        logging.getLogger(LOGGER_NAME).warning("Bad integer in %s (%r); using %d", name, v, default)
        return default

def _env_octal(environ: Mapping[str, str], name: str, default: int) -> int:
    v = environ.get(name, "").strip()
    if not v:
        return default
    try:
        return int(v, 8)
    except ValueError:
        logging.getLogger(LOGGER_NAME).warning("Bad octal mode in %s (%r); using %o", name, v, default)
        return default

# Function: fncLoadEnvFile
# Purpose : Pull NAME=value pairs from an installer-written env/key file into environ.
# Notes   : Never overrides a variable already set; missing file is fine.
def fncLoadEnvFile(path: str, environ: dict | None = None) -> int:
    environ = os.environ if environ is None else environ
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return 0
    except OSError as e:
        fncPrintMessage(f"Could not read {path}: {e}", "warning")
        return 0

    loaded = 0
    for line in lines:
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = ENV_ASSIGN_RE.match(line)
        if not m:
            continue
        key = m.group(1)
        val = m.group(2) or m.group(3) or m.group(4) or ""
        if key not in environ:
            environ[key] = val
            loaded += 1
    return loaded

# Function: fncLoadSettings
# Purpose : Build the run's Settings from module defaults + environment.
# Notes   : Clamps weak password lengths; refuses home modes that open the dir to group/other.
def fncLoadSettings(environ: Mapping[str, str] | None = None) -> Settings:
    environ = os.environ if environ is None else environ
    log = logging.getLogger(LOGGER_NAME)

    length = _env_int(environ, "PASSWORD_LENGTH", PASSWORD_LENGTH)
    if length < MIN_PASSWORD_LENGTH:
        log.warning("PASSWORD_LENGTH=%d is too short; using %d", length, MIN_PASSWORD_LENGTH)
        length = MIN_PASSWORD_LENGTH

    home_mode = _env_octal(environ, "HOME_MODE", HOME_MODE)
    if home_mode & (stat.S_IRWXG | stat.S_IRWXO) or home_mode & ~0o7777:
        log.warning("HOME_MODE=%o grants group/other access; using %o", home_mode, HOME_MODE)
        home_mode = HOME_MODE

    return Settings(
        log_file=_env_str(environ, "LOG_FILE", LOG_FILE),
        cred_file=_env_str(environ, "CRED_FILE", CRED_FILE),
        lock_path=_env_str(environ, "LOCK_PATH", LOCK_PATH),
        default_shell=_env_str(environ, "DEFAULT_SHELL", DEFAULT_SHELL),
        password_length=length,
        force_password_change=_env_bool(environ, "FORCE_PASSWORD_CHANGE", FORCE_PASSWORD_CHANGE),
        home_mode=home_mode,
        uid_min=_env_int(environ, "UID_MIN", UID_MIN),
        admin_required=_env_bool(environ, "ADMIN_REQUIRED", ADMIN_REQUIRED),
        name_regex=_env_str(environ, "NAME_REGEX", NAME_REGEX),
        enc_key=_env_str(environ, ENC_KEY_ENV, "") or None,
    )

#===================#
# Utility / Logging #
#===================#

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for operator-facing prints that are not activity events.
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.RED   + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}")

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        fncPrintMessage("This script requires Python 3.10 or higher. Please upgrade.", "error")
        sys.exit(1)

# Function: fncSetupLogging
# Purpose : Configure the activity log: file + stdout, "YYYY-MM-DD HH:MM:SS - message".
# Notes   : An unwritable log never stops the run; the operator is told once and
#           output continues on the terminal only.
def fncSetupLogging(log_file: str, stream=None) -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(logging.INFO)
    log.propagate = False
    fncCloseLogging(log)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console = logging.StreamHandler(stream or sys.stdout)
    console.setFormatter(formatter)
    log.addHandler(console)

    try:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.isdir(log_dir):
            os.makedirs(log_dir, mode=0o750, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        fncPrintMessage(
            f"Activity log {log_file} is not writable ({e}); no persistent history will be kept for this run.",
            "warning",
        )
    else:
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)
    return log

# Function: fncCloseLogging
# Purpose : Flush and detach every handler on the activity logger.
def fncCloseLogging(log: logging.Logger):
    for handler in list(log.handlers):
        try:
            handler.flush()
            handler.close()
        finally:
            log.removeHandler(handler)

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). Uses BIN map for safety.
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError as e:
        return 127, "", str(e)

Runner = Callable[..., tuple[int, str, str]]

def _describe(cmdkey: str, rc: int, err: str) -> str:
    return f"{cmdkey} exited {rc}" + (f": {err}" if err else "")

#======================#
# Credential Generator #
#======================#

# Function: fncGeneratePassword
# Purpose : Generate a random initial password.
# Notes   : secrets.choice over a mixed alphabet with no ',' or ':' (store/chpasswd delimiters).
def fncGeneratePassword(length: int = PASSWORD_LENGTH) -> str:
    length = max(length, MIN_PASSWORD_LENGTH)
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))

#============================#
# Secure Credential Store    #
#============================#

def _ensure_private_dir(path: str):
    """Create *path* as 0700 (or tighten it) and prove nobody else can get in."""
    try:
        os.makedirs(path, mode=0o700, exist_ok=True)
        st = os.lstat(path)
    except OSError as e:
        raise PrecursorError(f"Cannot create credential directory {path}: {e}") from e

    if stat.S_ISLNK(st.st_mode):
        raise PrecursorError(f"Refusing symlinked credential directory: {path}")
    if not stat.S_ISDIR(st.st_mode):
        raise PrecursorError(f"Credential directory {path} is not a directory")
    if st.st_uid != os.geteuid():
        raise PrecursorError(f"Credential directory {path} is owned by uid {st.st_uid}, not {os.geteuid()}")

    if stat.S_IMODE(st.st_mode) & (stat.S_IRWXG | stat.S_IRWXO):
        try:
            os.chmod(path, 0o700)
            st = os.lstat(path)
        except OSError as e:
            raise PrecursorError(f"Cannot restrict credential directory {path}: {e}") from e
        if stat.S_IMODE(st.st_mode) & (stat.S_IRWXG | stat.S_IRWXO):
            raise PrecursorError(f"Credential directory {path} is still accessible to group/other")


class CredentialStore:
    """Append-only ``username,password`` file, owner read/write only.

    Nothing is written until both the directory and the file have been
    verified private. With an encryption key the password column holds a
    ``fernet:<token>`` blob instead of the plaintext.
    """

    def __init__(self, path: str, enc_key: str | None = None):
        self.path = path
        self.enc_key = enc_key
        self._fh = None
        self._fernet = None
        self._known: set[str] = set()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def usernames(self) -> set[str]:
        return set(self._known)

    def open(self):
        if self._fh is not None:
            return
        if self.enc_key:
            from cryptography.fernet import Fernet
            try:
                self._fernet = Fernet(self.enc_key.encode())
            except (ValueError, TypeError) as e:
                raise PrecursorError(f"{ENC_KEY_ENV} is not a valid Fernet key: {e}") from e

        _ensure_private_dir(os.path.dirname(os.path.abspath(self.path)))

        flags = os.O_WRONLY | os.O_APPEND | os.O_CREAT | getattr(os, "O_NOFOLLOW", 0)
        try:
            fd = os.open(self.path, flags, 0o600)
        except OSError as e:
            raise PrecursorError(f"Cannot open credential file {self.path}: {e}") from e

        try:
            os.fchmod(fd, 0o600)
            st = os.fstat(fd)
            if not stat.S_ISREG(st.st_mode):
                raise PrecursorError(f"Credential file {self.path} is not a regular file")
            if st.st_uid != os.geteuid():
                raise PrecursorError(f"Credential file {self.path} is owned by uid {st.st_uid}")
            if stat.S_IMODE(st.st_mode) & (stat.S_IRWXG | stat.S_IRWXO):
                raise PrecursorError(f"Credential file {self.path} is accessible to group/other")
            self._known = self._read_usernames()
        except OSError as e:
            os.close(fd)
            raise PrecursorError(f"Cannot secure credential file {self.path}: {e}") from e
        except PrecursorError:
            os.close(fd)
            raise
        self._fh = os.fdopen(fd, "a", encoding="utf-8")

    def _read_usernames(self) -> set[str]:
        names = set()
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                user = line.split(",", 1)[0].strip()
                if user:
                    names.add(user)
        return names

    def append(self, username: str, password: str):
        if self._fh is None:
            raise CredentialStoreError(username, "credential store is not open")
        if username in self._known:
            raise CredentialStoreError(
                username, f"{self.path} already holds an entry for {username}; refusing to add another"
            )
        secret = password
        if self._fernet is not None:
            secret = "fernet:" + self._fernet.encrypt(password.encode()).decode()
        try:
            self._fh.write(f"{username},{secret}\n")
            self._fh.flush()
            os.fsync(self._fh.fileno())
        except OSError as e:
            raise CredentialStoreError(username, f"writing {self.path} failed: {e}") from e
        self._known.add(username)

    def close(self):
        if self._fh is not None:
            try:
                self._fh.flush()
            finally:
                self._fh.close()
                self._fh = None

#=================================#
# Host capability interfaces      #
#=================================#

class AccountDirectory(Protocol):
    def lookup(self, username: str) -> AccountState: ...
    def exists(self, username: str) -> bool: ...
    def create(self, username: str) -> tuple[str, bool]: ...
    def set_password(self, username: str, password: str) -> None: ...
    def expire_password(self, username: str) -> None: ...


class GroupDirectory(Protocol):
    def exists(self, name: str) -> bool: ...
    def create(self, name: str) -> None: ...
    def add_member(self, name: str, username: str) -> None: ...


class FilesystemOwner(Protocol):
    def secure_home(self, path: str, owner: str, group: str, mode: int) -> None: ...

#===========================#
# Account / Group resolvers #
#===========================#

# getent: 0 found, 2 key not found
_GETENT_MISSING = 2


class HostGroups:
    """Group database via getent/groupadd/usermod."""

    def __init__(self, runner: Runner = fncRun):
        self.run = runner

    def exists(self, name: str) -> bool:
        rc, _, err = self.run("getent", ["group", name])
        if rc == 0:
            return True
        if rc == _GETENT_MISSING:
            return False
        raise GroupCreationError(name, f"cannot query group database: {_describe('getent', rc, err)}")

    def create(self, name: str):
        rc, _, err = self.run("groupadd", [name])
        if rc != 0:
            raise GroupCreationError(name, f"failed to create group {name}: {_describe('groupadd', rc, err)}")

    # usermod -aG is a no-op for an existing member
    def add_member(self, name: str, username: str):
        rc, _, err = self.run("usermod", ["-aG", name, username])
        if rc != 0:
            raise MembershipError(username, f"failed to add {username} to {name}: {_describe('usermod', rc, err)}")


class HostAccounts:
    """Account database via getent/useradd/chpasswd/chage."""

    def __init__(self, shell: str = DEFAULT_SHELL, runner: Runner = fncRun):
        self.shell = shell
        self.run = runner

    def lookup(self, username: str) -> AccountState:
        rc, out, err = self.run("getent", ["passwd", username])
        if rc == _GETENT_MISSING:
            return AccountState(exists=False)
        if rc != 0:
            raise AccountCreationError(username, f"cannot query account database: {_describe('getent', rc, err)}")
        # name:x:uid:gid:gecos:home:shell
        parts = out.splitlines()[0].split(":") if out else []
        if len(parts) < 7:
            raise AccountCreationError(username, f"unexpected passwd entry for {username}: {out!r}")
        try:
            uid = int(parts[2])
        except ValueError:
            uid = None
        return AccountState(exists=True, uid=uid, home=parts[5] or None)

    def exists(self, username: str) -> bool:
        return self.lookup(username).exists

    # Returns (home, True when useradd -U also made the same-named group)
    def create(self, username: str) -> tuple[str, bool]:
        args = ["-m", "-s", self.shell]
        # useradd -U refuses to run when the user group already exists
        rc, _, err = self.run("getent", ["group", username])
        if rc == 0:
            args += ["-g", username]
        elif rc == _GETENT_MISSING:
            args.append("-U")
        else:
            raise AccountCreationError(username, f"cannot query group database: {_describe('getent', rc, err)}")
        args.append(username)

        rc, _, err = self.run("useradd", args)
        if rc != 0:
            raise AccountCreationError(username, f"failed to create user {username}: {_describe('useradd', rc, err)}")

        state = self.lookup(username)
        if not state.exists or not state.home:
            raise AccountCreationError(username, f"user {username} missing from account database after useradd")
        return state.home, "-U" in args

    def set_password(self, username: str, password: str):
        rc, _, err = self.run("chpasswd", [], input=f"{username}:{password}\n")
        if rc != 0:
            raise AccountCreationError(username, f"failed to set password for {username}: {_describe('chpasswd', rc, err)}")

    def expire_password(self, username: str):
        rc, _, err = self.run("chage", ["-d", "0", username])
        if rc != 0:
            raise AccountCreationError(username, f"failed to expire password for {username}: {_describe('chage', rc, err)}")


class HostFilesystem:
    """Home directory ownership and mode."""

    def secure_home(self, path: str, owner: str, group: str, mode: int):
        try:
            st = os.lstat(path)
        except OSError as e:
            raise OwnershipError(owner, f"cannot stat home {path}: {e}") from e
        if stat.S_ISLNK(st.st_mode):
            raise OwnershipError(owner, f"refusing to chown symlinked home {path}")
        if not stat.S_ISDIR(st.st_mode):
            raise OwnershipError(owner, f"home {path} is not a directory")
        try:
            shutil.chown(path, user=owner, group=group)
            os.chmod(path, mode)
        except (OSError, LookupError) as e:
            raise OwnershipError(owner, f"failed to set {owner}:{group} mode {mode:o} on {path}: {e}") from e

#======================#
# Provisioning Engine  #
#======================#

@dataclass
class ProvisioningContext:
    """Everything setupUser touches, handed in rather than reached for."""

    accounts: AccountDirectory
    groups: GroupDirectory
    filesystem: FilesystemOwner
    credentials: CredentialStore
    log: logging.Logger
    settings: Settings = field(default_factory=Settings)
    generate_password: Callable[[int], str] = fncGeneratePassword


def _account_phase(username: str, ctx: ProvisioningContext, result: ProvisioningResult) -> str | None:
    if username in RESERVED_USERS:
        raise ProtectedAccountError(username, f"{username} is a reserved system account; not managed")

    state = ctx.accounts.lookup(username)
    if state.exists:
        if state.uid is not None and state.uid < ctx.settings.uid_min:
            raise ProtectedAccountError(
                username, f"{username} is a system account (uid {state.uid} < {ctx.settings.uid_min}); not managed"
            )
        ctx.log.info("User %s already exists; password and credential store left untouched", username)
        return state.home

    # Checked before useradd: a password the store would refuse must never be set
    if username in ctx.credentials.usernames:
        raise CredentialStoreError(
            username, f"{ctx.credentials.path} already holds an entry for {username}; not recreating the account"
        )

    password = ctx.generate_password(ctx.settings.password_length)
    home, made_user_group = ctx.accounts.create(username)
    result.created = True
    ctx.log.info("Created user %s (home %s, shell %s)", username, home, ctx.settings.default_shell)
    if made_user_group:
        result.groups_created.append(username)
        result.memberships.append(username)
        ctx.log.info("Created primary group %s with %s as its member", username, username)
    ctx.accounts.set_password(username, password)

    ctx.credentials.append(username, password)
    ctx.log.info("Stored initial password for %s in %s", username, ctx.credentials.path)

    if ctx.settings.force_password_change:
        try:
            ctx.accounts.expire_password(username)
        except AccountCreationError as e:
            ctx.log.error("Could not force a password change for %s: %s", username, e)
        else:
            ctx.log.info("Password for %s expired; change required at first login", username)
    return home


def _primary_group_phase(username: str, ctx: ProvisioningContext, result: ProvisioningResult):
    if username in result.groups_created:
        return
    if ctx.groups.exists(username):
        ctx.log.info("Primary group %s already exists", username)
        return
    ctx.groups.create(username)
    result.groups_created.append(username)
    ctx.log.info("Created primary group %s", username)
    ctx.groups.add_member(username, username)
    result.memberships.append(username)
    ctx.log.info("Added %s to primary group %s", username, username)


def _requested_groups_phase(record: ProvisioningRecord, ctx: ProvisioningContext, result: ProvisioningResult):
    for group in record.groups:
        if not ctx.groups.exists(group):
            ctx.groups.create(group)
            result.groups_created.append(group)
            ctx.log.info("Created group %s", group)
        ctx.groups.add_member(group, record.username)
        result.memberships.append(group)
        ctx.log.info("Added %s to group %s", record.username, group)


def _home_phase(username: str, home: str | None, ctx: ProvisioningContext, result: ProvisioningResult):
    if not home or not os.path.isabs(home) or os.path.normpath(home) == "/":
        raise OwnershipError(username, f"unusable home directory {home!r} for {username}")
    ctx.filesystem.secure_home(home, username, username, ctx.settings.home_mode)
    result.home_secured = True
    ctx.log.info("Home %s owned by %s:%s, mode %o", home, username, username, ctx.settings.home_mode)

# Function: fncSetupUser
# Purpose : Bring one record to its desired state: account, primary group, groups, home.
# Notes   : Phases run in order; the first RecordError ends this record (no rollback).
#           Every phase runs whether or not the account was just created.
def fncSetupUser(record: ProvisioningRecord, ctx: ProvisioningContext) -> ProvisioningResult:
    result = ProvisioningResult(username=record.username)
    phase = "account"
    try:
        home = _account_phase(record.username, ctx, result)
        phase = "primary-group"
        _primary_group_phase(record.username, ctx, result)
        phase = "groups"
        _requested_groups_phase(record, ctx, result)
        phase = "home"
        _home_phase(record.username, home, ctx, result)
    except RecordError as e:
        result.failed_phase = phase
        result.error = e
        ctx.log.error("Provisioning %s stopped in %s phase (%s): %s", record.username, phase, type(e).__name__, e)
    return result

#=================#
# Batch Driver    #
#=================#

# Function: fncParseRecord
# Purpose : Turn one "username;group1,group2" line into a ProvisioningRecord.
# Notes   : Empty group tokens are dropped and counted; bad names raise RecordParseError.
def fncParseRecord(line: str, lineno: int = 0, name_regex: str = NAME_REGEX) -> ProvisioningRecord:
    fields = line.strip().split(RECORD_DELIMITER)
    if len(fields) > 2:
        raise RecordParseError(lineno, f"expected 'username;groups', got {len(fields)} fields")

    pattern = re.compile(name_regex)
    username = fields[0].strip()
    if not username:
        raise RecordParseError(lineno, "empty username")
    if len(username) > NAME_MAXLEN or not pattern.match(username):
        raise RecordParseError(lineno, f"invalid username {username!r}")

    groups: list[str] = []
    blank = 0
    raw_groups = fields[1] if len(fields) == 2 else ""
    if raw_groups.strip():
        for token in raw_groups.split(GROUP_DELIMITER):
            name = token.strip()
            if not name:
                blank += 1
                continue
            if len(name) > NAME_MAXLEN or not pattern.match(name):
                raise RecordParseError(lineno, f"invalid group name {name!r}")
            if name not in groups:
                groups.append(name)
    return ProvisioningRecord(username=username, groups=tuple(groups), lineno=lineno, blank_tokens=blank)

# Function: fncReadRecords
# Purpose : Read and parse the input file in order.
# Notes   : Blank/comment lines skipped; unparseable lines are logged and skipped.
def fncReadRecords(path: str, log: logging.Logger, name_regex: str = NAME_REGEX) -> list[ProvisioningRecord]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except (OSError, UnicodeDecodeError) as e:
        raise UsageError(f"Cannot read input file {path}: {e}") from e

    records = []
    for lineno, line in enumerate(lines, 1):
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        try:
            record = fncParseRecord(line, lineno, name_regex)
        except RecordParseError as e:
            log.error("Skipping %s %s", path, e)
            continue
        if record.blank_tokens:
            log.warning("Line %d: ignored %d empty group name(s) for %s", lineno, record.blank_tokens, record.username)
        records.append(record)
    return records


class StopFlag:
    """Signal handler that asks the batch to stop before the next record."""

    def __init__(self):
        self.requested = False
        self.signame = None

    def __call__(self, signum, frame):
        self.requested = True
        self.signame = signal.Signals(signum).name

    @contextmanager
    def installed(self, signals=(signal.SIGINT, signal.SIGTERM)) -> Iterator["StopFlag"]:
        previous = {sig: signal.signal(sig, self) for sig in signals}
        try:
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

# Function: fncRunBatch
# Purpose : Provision records strictly in order, one at a time.
# Notes   : Per-record failures are already logged by fncSetupUser; the completion
#           line is written whether or not any record failed.
def fncRunBatch(records: list[ProvisioningRecord], ctx: ProvisioningContext,
                source: str = "input", stop: StopFlag | None = None) -> BatchReport:
    report = BatchReport()
    ctx.log.info("Starting account provisioning from %s (%d record(s))", source, len(records))

    for record in records:
        if stop is not None and stop.requested:
            report.interrupted = True
            ctx.log.warning("Received %s; stopping before %s (%d of %d record(s) processed)",
                            stop.signame, record.username, report.processed, len(records))
            break
        result = fncSetupUser(record, ctx)
        report.processed += 1
        if result.created:
            report.created.append(record.username)
        if not result.ok:
            report.failed.append(record.username)

    ctx.log.info("Account provisioning complete: %d processed, %d created, %d failed%s",
                 report.processed, len(report.created), len(report.failed),
                 " (interrupted)" if report.interrupted else "")
    if report.failed:
        ctx.log.info("Records with errors: %s", ", ".join(report.failed))
    return report

#=================#
# Script harness  #
#=================#

# Function: fncRunLock
# Purpose : Hold an exclusive lock for the whole run.
# Notes   : Two runs mutating the account database at once is what this prevents.
@contextmanager
def fncRunLock(path: str):
    try:
        lock_dir = os.path.dirname(path)
        if lock_dir:
            os.makedirs(lock_dir, exist_ok=True)
        fh = open(path, "w")
    except OSError as e:
        raise PrecursorError(f"Failed to open lock file {path}: {e}") from e
    try:
        try:
            os.chmod(path, 0o600)
            fcntl.lockf(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise PrecursorError("Another instance of accountmatic is already running") from e
        except OSError as e:
            raise PrecursorError(f"Failed to acquire lock ({path}): {e}") from e
        yield fh
    finally:
        fh.close()

def fncBuildParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accountmatic",
        description="Provision local users and groups from a 'username;group1,group2' list.",
    )
    parser.add_argument("input", nargs="?", help="Input file, one record per line")
    parser.add_argument("--env-file", default=ENV_FILE, help=f"Settings file to load (default {ENV_FILE})")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser

# Function: fncMain
# Purpose : Program entrypoint; settings, logging, usage/root checks, lock, store, batch.
# Notes   : 0 when the batch completes (even with per-record failures), 1 otherwise.
def fncMain(argv: list[str] | None = None) -> int:
    os.umask(0o077)
    args = fncBuildParser().parse_args(argv)

    fncLoadEnvFile(args.env_file)
    fncLoadEnvFile(KEY_FILE)
    # Log first so settings warnings reach the activity log
    log = fncSetupLogging(_env_str(os.environ, "LOG_FILE", LOG_FILE))
    try:
        settings = fncLoadSettings()
        if not args.input:
            log.error(USAGE)
            return 1
        if settings.admin_required and os.geteuid() != 0:
            log.error("This needs root to change accounts and groups. Try sudo.")
            return 1

        with fncRunLock(settings.lock_path):
            records = fncReadRecords(args.input, log, settings.name_regex)
            with CredentialStore(settings.cred_file, settings.enc_key) as store:
                ctx = ProvisioningContext(
                    accounts=HostAccounts(shell=settings.default_shell),
                    groups=HostGroups(),
                    filesystem=HostFilesystem(),
                    credentials=store,
                    log=log,
                    settings=settings,
                )
                stop = StopFlag()
                with stop.installed():
                    report = fncRunBatch(records, ctx, source=args.input, stop=stop)
        return 1 if report.interrupted else 0
    except UsageError as e:
        log.error("%s", e)
        log.error(USAGE)
        return 1
    except PrecursorError as e:
        log.error("Aborting before any credential is written: %s", e)
        return 1
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "error")
        return 130
    except Exception as e:
        log.exception("Unhandled exception: %s", e)
        return 1
    finally:
        fncCloseLogging(log)

def fncEntryPoint():
    fncCheckPyVersion()
    sys.exit(fncMain())

if __name__ == "__main__":
    fncEntryPoint()
