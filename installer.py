#!/usr/bin/env python3
import os
import sys
import shutil
import hashlib
import subprocess
import random
import argparse
from pathlib import Path
from colorama import init as _cinit, Fore as F, Style as S

import accountmatic as am

# ============================
# Paths & constants
# ============================
ROOT_DIR = Path(__file__).resolve().parent
SCRIPT_SRC = ROOT_DIR / "accountmatic.py"
REQS = ROOT_DIR / "requirements.txt"
VERSION = am.VERSION

# System paths
SCRIPT_DST = Path("/usr/local/sbin/accountmatic.py")
ENVFILE = Path(am.ENV_FILE)
KEYFILE = Path(am.KEY_FILE)                   # separate env file, 0600
LOGROTATE = Path("/etc/logrotate.d/accountmatic")
ENC_KEY_ENV = am.ENC_KEY_ENV                  # the env var name holding the Fernet key

BANNER = r"""
    _    ____ ____ ___  _   _ _   _ _____                 _   _
   / \  / ___/ ___/ _ \| | | | \ | |_   _|_ __ ___   __ _| |_(_) ___
  / _ \| |  | |  | | | | | | |  \| | | | | '_ ` _ \ / _` | __| |/ __|
 / ___ \ |__| |__| |_| | |_| | |\  | | | | | | | | | (_| | |_| | (__
/_/   \_\____\____\___/ \___/|_| \_| |_| |_| |_| |_|\__,_|\__|_|\___|
              One list in, a houseful of users out.
"""

BLURBS = [
    "Minting accounts: /etc/passwd is about to get busier.\n",
    "Rolling passwords: Long, random, and not written on a sticky note.\n",
    "Herding groups: Everyone in their pen, nobody in wheel by accident.\n",
    "Locking homes: chmod 700, because neighbours are nosy.\n",
    "Filing credentials: One line per user, for your eyes only.\n",
]

# ============================
# Colour / output helpers
# ============================
_cinit(autoreset=True)

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=sys.stdout):
    """Decide if we should output ANSI colours."""
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except Exception:
        return False

def fncColor(text: str, *styles: str) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor() or not styles:
        return text
    m = {
        "red": F.RED, "green": F.GREEN, "yellow": F.YELLOW, "blue": F.BLUE,
        "magenta": F.MAGENTA, "cyan": F.CYAN, "white": F.WHITE, "gray": F.LIGHTBLACK_EX,
        "bold": S.BRIGHT, "dim": S.DIM,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{S.RESET_ALL}"

def fncHeading(msg: str): print(fncColor(msg, "magenta", "bold"))
def fncInfo(msg: str):    print(fncColor("[*] ", "cyan") + msg)
def fncOk(msg: str):      print(fncColor("[+] ", "green") + msg)
def fncWarn(msg: str):    print(fncColor("[!] ", "yellow") + msg)
def fncErr(msg: str):     print(fncColor("[-] ", "red") + msg)

# ============================
# Core helpers
# ============================
def fncRequireRoot():
    if os.geteuid() != 0:
        fncErr("ACCOUNTmatic installs into /usr/local/sbin and /etc; re-run with sudo.")
        sys.exit(1)

def fncSha256Sum(filepath: Path) -> str:
    digest = hashlib.sha256()
    with open(filepath, "rb") as fh:
        while block := fh.read(65536):
            digest.update(block)
    return digest.hexdigest()

def fncRun(cmd: list[str]):
    fncInfo("Running: " + fncColor(" ".join(cmd), "white"))
    subprocess.run(cmd, check=True)

def fncInstallRequirements():
    """pip-install colorama and cryptography for the interpreter running this installer."""
    if not REQS.exists():
        fncWarn(f"{REQS.name} missing next to the installer; assuming colorama and cryptography are present.")
        return
    try:
        fncRun([sys.executable, "-m", "pip", "install", "-r", str(REQS), "--break-system-packages"])
    except (OSError, subprocess.CalledProcessError) as e:
        fncErr(f"Dependency install failed: {e}")
        sys.exit(1)
    fncOk("Python dependencies in place")

def fncPrintBanner():
    print(fncColor(BANNER, "cyan"))
    print(random.choice(BLURBS))

def fncShQuote(val: str) -> str:
    """Single-quote a value so the env file survives being sourced by a shell."""
    text = "" if val is None else str(val)
    return "'" + text.replace("'", "'\"'\"'") + "'"

def fncEnsureKeyfile(path: Path | None = None) -> bool:
    """Write a fresh Fernet key to the key file (0600). Returns True only when it was created now."""
    from cryptography.fernet import Fernet
    path = path or KEYFILE
    try:
        if path.exists():
            os.chmod(path, 0o600)
            return False
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(f"{ENC_KEY_ENV}={Fernet.generate_key().decode()}\n")
    except OSError as e:
        fncErr(f"Could not create {path}: {e}")
        sys.exit(1)
    fncOk(f"Created encryption key file {path} (mode 0600)")
    return True

def _fncParseKeyfile(path: Path) -> str | None:
    env: dict[str, str] = {}
    am.fncLoadEnvFile(str(path), env)
    return env.get(ENC_KEY_ENV) or None

def fncLoadEncKey(path: Path | None = None) -> str | None:
    """Prefer env (runtime), else the keyfile."""
    val = os.environ.get(ENC_KEY_ENV, "").strip()
    if val:
        return val
    return _fncParseKeyfile(path or KEYFILE)

def fncDecryptSecretFernet(blob: str, key_b64: str) -> str:
    from cryptography.fernet import Fernet
    token = blob.split(":", 1)[1] if blob.startswith("fernet:") else blob
    return Fernet(key_b64.encode()).decrypt(token.encode()).decode()

# ============================
# Env file
# ============================
def fncRenderEnvfile(values: dict[str, str]) -> str:
    """Render NAME='value' lines in the order given."""
    lines = [
        "# Autogenerated by ACCOUNTmatic installer",
        "# Keep this file 0600, owner root",
        "",
    ]
    lines += [f"{k}={fncShQuote(str(v))}" for k, v in values.items()]
    return "\n".join(lines) + "\n"

def fncBuildEnvfileContent() -> str:
    """Ask for runtime settings and render the env file."""

    def ask_bool(q: str, default: bool = True) -> bool:
        hint = "Y/n" if default else "y/N"
        while True:
            a = input(f"{fncColor(q, 'cyan', 'bold')} {fncColor(f'[{hint}]', 'gray')}: ").strip().lower()
            if not a:
                return default
            if a in ("y", "yes"):
                return True
            if a in ("n", "no"):
                return False
            fncWarn("Please answer y or n.")

    def ask_value(q: str, default: str) -> str:
        prompt = f"{fncColor(q, 'cyan', 'bold')}{fncColor(f' [{default}]', 'gray')}: "
        return input(prompt).strip() or default

    def ask_int(q: str, default: int) -> int:
        while True:
            raw = ask_value(q, str(default))
            if raw.isdigit():
                return int(raw)
            fncWarn("Please enter a whole number.")

    print()
    fncHeading("== ACCOUNTmatic - Runtime configuration ==")
    values = {
        "DEFAULT_SHELL": ask_value("Default shell for new users", am.DEFAULT_SHELL),
        "LOG_FILE": ask_value("Activity log file", am.LOG_FILE),
        "CRED_FILE": ask_value("Credential store file (directory will be 0700)", am.CRED_FILE),
        "PASSWORD_LENGTH": str(max(ask_int("Initial password length", am.PASSWORD_LENGTH), am.MIN_PASSWORD_LENGTH)),
        "FORCE_PASSWORD_CHANGE": "true" if ask_bool("Force a password change at first login?", True) else "false",
        "UID_MIN": str(ask_int("Lowest uid this tool may manage", am.UID_MIN)),
    }
    return fncRenderEnvfile(values)

def fncWriteEnvfile(content: str, path: Path | None = None):
    path = path or ENVFILE
    if path.exists():
        fncInfo(f"Updating {path}")
    else:
        fncOk(f"Creating {path}")
    path.write_text(content)
    os.chmod(path, 0o600)
    fncOk("Wrote config to " + fncColor(str(path), "white", "bold") + " (mode 0600)")

def fncReadEnvValues(path: Path | None = None) -> dict[str, str]:
    env: dict[str, str] = {}
    am.fncLoadEnvFile(str(path or ENVFILE), env)
    return env

def fncWriteLogrotate(log_file: str, path: Path | None = None):
    """Drop a logrotate file so the activity log doesn't grow forever."""
    path = path or LOGROTATE
    content = f"""{log_file} {{
  monthly
  rotate 12
  compress
  missingok
  notifempty
  create 0640 root root
}}
"""
    try:
        path.write_text(content)
        os.chmod(path, 0o644)
        fncOk(f"Wrote logrotate config {path}")
    except OSError as e:
        fncWarn(f"Couldn't write logrotate file ({path}): {e}")

# ============================
# Actions
# ============================
def fncCopyScript() -> str:
    """Copy accountmatic.py into place (0700) and return the installed SHA256."""
    if not SCRIPT_SRC.exists():
        fncErr(f"Local source not found: {SCRIPT_SRC}")
        sys.exit(1)
    shutil.copy2(SCRIPT_SRC, SCRIPT_DST)
    os.chmod(SCRIPT_DST, 0o700)
    return fncSha256Sum(SCRIPT_DST)

def fncDoInstall():
    fncRequireRoot()
    fncHeading("[*] Installing ACCOUNTmatic...")

    fncInstallRequirements()

    sha = fncCopyScript()
    fncOk(f"Installed {SCRIPT_SRC.name} to {SCRIPT_DST}")
    fncInfo(f"SHA256: {fncColor(sha, 'white', 'bold')}")

    if ENVFILE.exists():
        fncInfo(f"Keeping existing {ENVFILE}")
    else:
        fncWriteEnvfile(fncBuildEnvfileContent())
    env = fncReadEnvValues()

    log_file = env.get("LOG_FILE", am.LOG_FILE)
    Path(log_file).parent.mkdir(mode=0o750, parents=True, exist_ok=True)
    fncOk(f"Ensured log directory {Path(log_file).parent}")

    cred_dir = Path(env.get("CRED_FILE", am.CRED_FILE)).parent
    cred_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    os.chmod(cred_dir, 0o700)
    fncOk(f"Ensured credential directory {cred_dir} (mode 0700)")

    if input(fncColor("Encrypt stored passwords with a Fernet key? [y/N]: ", "cyan")).strip().lower() in ("y", "yes"):
        fncEnsureKeyfile()
        fncInfo("Read them back later with: " + fncColor("installer.py reveal", "white", "bold"))

    fncWriteLogrotate(log_file)

    fncOk("Installation complete.")
    fncInfo("Run it with: " + fncColor(f"sudo {SCRIPT_DST} users.txt", "white", "bold"))

def fncDoUpdate():
    fncRequireRoot()
    fncHeading("[*] Updating ACCOUNTmatic...")

    if not SCRIPT_DST.exists():
        fncErr(f"{SCRIPT_DST} is missing; run 'installer.py install' first.")
        sys.exit(1)
    if not SCRIPT_SRC.exists():
        fncErr(f"Local source not found: {SCRIPT_SRC}")
        sys.exit(1)

    wanted = fncSha256Sum(SCRIPT_SRC)
    current = fncSha256Sum(SCRIPT_DST)
    fncInfo(f"Checkout  : {fncColor(wanted, 'white', 'bold')}")
    fncInfo(f"Installed : {fncColor(current, 'white', 'bold')}")

    if wanted == current:
        fncOk(f"{SCRIPT_DST} is already current.")
        return

    if fncCopyScript() != wanted:
        fncErr(f"{SCRIPT_DST} does not match the checkout after copying; leaving it for inspection.")
        sys.exit(1)
    fncOk(f"{SCRIPT_DST} updated.")

def fncDoUninstall(purge: bool = False):
    fncRequireRoot()
    fncHeading("[*] Uninstalling ACCOUNTmatic...")

    env = fncReadEnvValues()
    for p in (SCRIPT_DST, LOGROTATE):
        try:
            if p.exists():
                p.unlink()
                fncOk(f"Removed {p}")
            else:
                fncInfo(f"Not present: {p}")
        except OSError as e:
            fncWarn(f"Could not remove {p}: {e}")

    targets = [
        ("env file", ENVFILE),
        ("key file", KEYFILE),
        ("log dir", Path(env.get("LOG_FILE", am.LOG_FILE)).parent),
    ]

    def ask(q: str) -> bool:
        a = input(fncColor(q + " [y/N]: ", "cyan")).strip().lower()
        return a in ("y", "yes")

    for label, path in targets:
        if not path.exists():
            fncInfo(f"Not present: {label} ({path})")
            continue
        if not (purge or ask(f"Remove {label} {path}?")):
            continue
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
            fncOk(f"Removed {label}: {path}")
        except OSError as e:
            fncWarn(f"Failed to remove {label} {path}: {e}")

    cred_file = Path(env.get("CRED_FILE", am.CRED_FILE))
    if cred_file.exists():
        fncWarn(f"Credential store left in place: {cred_file} (delete it yourself once passwords are handed out)")
    fncOk("Uninstall complete.")

def fncDoGenKey():
    fncRequireRoot()
    if not fncEnsureKeyfile():
        fncInfo(f"Key file already present: {KEYFILE}")

def fncRevealLines(lines: list[str], key_b64: str | None) -> list[str]:
    """Decrypt ``fernet:`` password fields; plaintext lines pass through."""
    from cryptography.fernet import InvalidToken

    out = []
    for line in lines:
        line = line.rstrip("\n")
        if not line.strip():
            continue
        user, _, secret = line.partition(",")
        if secret.startswith("fernet:"):
            if not key_b64:
                secret = "<encrypted: no key>"
            else:
                try:
                    secret = fncDecryptSecretFernet(secret, key_b64)
                except (InvalidToken, ValueError):
                    secret = "<encrypted: wrong key>"
        out.append(f"{user},{secret}")
    return out

def fncDoReveal(cred_file: str | None = None):
    path = Path(cred_file or fncReadEnvValues().get("CRED_FILE", am.CRED_FILE))
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        fncErr(f"Cannot read {path}: {e}")
        sys.exit(1)
    for line in fncRevealLines(lines, fncLoadEncKey()):
        print(line)

# ============================
# Entry point
# ============================
def fncMain(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Installer/Updater for ACCOUNTmatic")
    parser.add_argument("action", choices=["install", "update", "uninstall", "genkey", "reveal"],
                        help="Action to perform")
    parser.add_argument("--purge", action="store_true", help="Remove env, key and logs without prompts")
    parser.add_argument("--file", help="Credential file for 'reveal' (default from env file)")
    parser.add_argument("--blackandwhite", action="store_true", help="Disable coloured output")
    args = parser.parse_args(argv)
    fncSetColorMode(args.blackandwhite)

    if args.action == "install":
        fncPrintBanner()
        fncDoInstall()
    elif args.action == "update":
        fncPrintBanner()
        fncDoUpdate()
    elif args.action == "uninstall":
        fncPrintBanner()
        fncDoUninstall(purge=args.purge)
    elif args.action == "genkey":
        fncDoGenKey()
    elif args.action == "reveal":
        fncDoReveal(args.file)

if __name__ == "__main__":
    fncMain()
