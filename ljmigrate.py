#!/usr/bin/env python3

import argparse
import hashlib
import os
import sys
import time
import warnings
import xmlrpc.client
from argparse import Namespace
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from functools import partial
from pathlib import Path
from xml.parsers.expat import ExpatError

import requests
from alive_progress import alive_bar, config_handler
from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning
from dotenv import dotenv_values

htmlparser = partial(BeautifulSoup, features="html.parser")
warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)
config_handler.set_global(bar="smooth", spinner="classic", receipt=False)

useragent = "ljmigrate/1.0"

DESCRIPTION = """
This script is a one-off utility to move the images embedded in a LiveJournal
blog off a decommissioned S3 bucket. It logs in to the LiveJournal XML-RPC API,
walks every day that has posts (oldest first), and rewrites image links that
point at the old bucket so they point at the new image host instead.

Nothing is stored locally and there is no resume. Re-running the script is
safe since entries that are already migrated no longer match.
"""

PLACEHOLDER_LOGIN = "username"
PLACEHOLDER_PASSWORD = "password"

AUTH_METHOD = "challenge"
PROTOCOL_VERSION = 1

DEFAULTS = {
    "api_url": "https://www.livejournal.com/interface/xmlrpc",
    "rate_limit": "4",  # calls per second
    "edit_delay": "5",  # seconds, after each edit and after each day
    "timeout": "60",
    "old_url": "https://s3.eu-central-1.amazonaws.com/",
    "conflict_url": "https://artyukh.hu/",
    "new_url": "https://www.artyukh.hu/lj/",
    "dry_run": "true",
    "username": "",
    "password": "",
    "log_file": "",
}


# Wire names for every struct we send or receive, keyed by our field names.
AUTH_FIELDS = {
    "username": "username",
    "auth_method": "auth_method",
    "challenge": "auth_challenge",
    "response": "auth_response",
    "version": "ver",
}

FIELDS: dict[str, dict[str, str]] = {
    "challenge": {
        "token": "challenge",
        "auth_scheme": "auth_scheme",
        "expire_time": "expire_time",
        "server_time": "server_time",
    },
    "auth": AUTH_FIELDS,
    "login": {
        "validated": "is_validated",
        "userid": "userid",
        "username": "username",
        "fullname": "fullname",
        "message": "message",
    },
    "daycount": {
        "date": "date",
        "count": "count",
    },
    "getevents": {
        **AUTH_FIELDS,
        "selecttype": "selecttype",
        "year": "year",
        "month": "month",
        "day": "day",
        "noprops": "noprops",
    },
    "entry": {
        "itemid": "itemid",
        "eventtime": "eventtime",
        "security": "security",
        "allowmask": "allowmask",
        "subject": "subject",
        "event": "event",
        "url": "url",
        "poster": "poster",
    },
    "editevent": {
        **AUTH_FIELDS,
        "itemid": "itemid",
        "event": "event",
        "lineendings": "lineendings",
        "subject": "subject",
        "security": "security",
        "allowmask": "allowmask",
    },
    "edit_result": {
        "itemid": "itemid",
        "anum": "anum",
        "url": "url",
    },
}


def main(argv: list | None = None) -> None:
    """Main command line entrypoint"""
    argv = argv or sys.argv[1:]
    args = parse_args(argv)
    context = init_context(args)
    try:
        with requests.Session() as session:
            context = init_clients(context, session)
            migrate(context)
    except (OperationFailed, NotValidated) as e:
        # The session is closed by now
        print(f"FATAL: {e}")
        raise SystemExit(1) from e


def parse_args(argv: list) -> Namespace:
    """Parse command line args"""
    parser = argparse.ArgumentParser(
        description=DESCRIPTION, formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Dump every request and response.")
    parser.add_argument("-l", "--login", help="LiveJournal account name.")
    parser.add_argument("-p", "--password", help="LiveJournal account password.")

    # Safety controls
    #
    # Default behavior is "dry-run" unless explicitly overridden, either by:
    #   * the config env var LJMIGRATE_DRY_RUN, or
    #   * the explicit CLI flags below.
    #
    # Edits are additionally guarded at the client layer (see BaseClient._require_apply()).

    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--apply",
        action="store_true",
        help="Actually edit entries. Without this, the script runs in dry-run mode.",
    )
    group.add_argument(
        "--dry-run",
        action="store_true",
        help="Force dry-run (no edits), regardless of config.",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Skip the interactive confirmation (only relevant with --apply).",
    )
    return parser.parse_args(argv)


def init_context(args: Namespace, context: Namespace | None = None) -> Namespace:
    """Initialize context"""
    context = context or Namespace()
    context.args = args
    context.config = config()

    # Precedence: explicit CLI flags > config/env > placeholders.
    context.identity = Namespace(
        username=args.login or context.config.username or PLACEHOLDER_LOGIN,
        password=args.password or context.config.password or PLACEHOLDER_PASSWORD,
    )

    if getattr(args, "apply", False):
        context.dry_run = False
    elif getattr(args, "dry_run", False):
        context.dry_run = True
    else:
        context.dry_run = parse_bool(getattr(context.config, "dry_run", None), default=True)

    print(f"Login to LJ as {context.identity.username}")
    if context.dry_run:
        print("---- Dry Run (no remote changes) ----")

    return context


def init_clients(context: Namespace, session: requests.Session | None = None) -> Namespace:
    """Initialize the RPC connection and the LiveJournal client and add them to context"""
    session = session or requests.Session()
    session.headers.update({"User-Agent": useragent})
    if getattr(context.args, "verbose", False):
        session.hooks["response"].append(dump_exchange)

    context.session = session
    context.rpc = RPCClient(context)
    context.lj = LJClient(context, context.rpc)
    return context


def migrate(context: Namespace) -> Namespace:
    """Log in, then walk every day with posts from the oldest to the newest and
    rewrite the legacy image links in each entry that needs it.

    Login and day count failures abort the run. A day that cannot be listed
    or an entry that cannot be edited is reported and skipped.
    """
    lj = context.lj

    account = lj.login()
    print(f"Got userid {account.userid}, username {account.username}, full name {account.fullname}")
    if account.validated is False:
        raise NotValidated("Account is not validated", "LJ.XMLRPC.login", account.username)

    days = lj.get_day_counts()
    days.reverse()

    stats = Namespace(
        days=0, entries=0, matched=0, edited=0, would_edit=0, failed_days=[], failed_entries=[],
    )

    if not context.dry_run and days:
        print("---- APPLY MODE: REMOTE CHANGES ----")
        print(f"About to edit entries of {context.identity.username} via the LiveJournal API.")
        print("URL rewrite:")
        print(f"  old: {context.config.old_url}")
        print(f"  new: {context.config.new_url}")
        print(f"  days to scan: {len(days)} ({days[0].date} .. {days[-1].date})")
        print(f"  entries to scan: {sum(int(day.count or 0) for day in days)}")
        if not confirm(context, "Type EDIT to confirm: ", "EDIT"):
            return stats

    log(context)

    with alive_bar(len(days), title="Days") as bar:
        for day in days:
            stats.days += 1
            if context.args.verbose:
                print(f"On day {day.date} I had {day.count} records")
            try:
                entries = lj.get_events(day.date)
            except ListFailed as e:
                print(f"! Cannot download entries for {day.date}: {e}")
                stats.failed_days.append(day.date)
                bar()
                pause(context)
                continue

            for entry in entries:
                migrate_entry(context, entry, stats)

            bar()
            pause(context)

    summarize(context, stats)
    return stats


def migrate_entry(context: Namespace, entry: Namespace, stats: Namespace) -> None:
    """Rewrite a single entry if its text still links to the legacy host"""
    cfg = context.config
    text = entry.event or ""
    stats.entries += 1

    if not needs_rewrite(text, cfg.old_url, cfg.conflict_url):
        if context.args.verbose:
            print(f"Cannot find any links in {entry.subject!r}")
        return

    stats.matched += 1
    prefixes = (cfg.old_url, cfg.conflict_url)
    new_text = rewrite_text(text, prefixes, cfg.new_url)
    links = find_urls_func(prefixes)(text)
    print(f"Edit entry: {entry.itemid} {entry.subject!r} ({len(links)} image links)")

    if context.dry_run:
        stats.would_edit += 1
        return

    try:
        result = context.lj.edit_entry(
            entry.itemid, new_text, entry.subject, entry.security, allowmask=entry.allowmask,
        )
    except EditFailed as e:
        print(f"! Cannot update entry {entry.itemid}: {e}")
        stats.failed_entries.append(entry.itemid)
    else:
        stats.edited += 1
        print(f"  Response: itemid {result.itemid}, anum {result.anum}, url {result.url}")
        log(context, f"edited {entry.itemid} {result.url}")

    pause(context)


def summarize(context: Namespace, stats: Namespace) -> None:
    """Print the totals of a run along with anything that failed"""
    if stats.failed_days:
        print("! Errors attempting to list the following days:")
        for date in stats.failed_days:
            print(" ", date)

    if stats.failed_entries:
        print("! Errors attempting to edit the following entries:")
        for itemid in stats.failed_entries:
            print(" ", itemid)

    print(f"Scanned {stats.entries} entries over {stats.days} days; {stats.matched} with legacy links")
    if context.dry_run:
        print(f"Edit entries: would edit {stats.would_edit} entries (dry-run)")
    else:
        print(f"Edit entries: {stats.edited} edited, {len(stats.failed_entries)} failed")
    log(context, f"done edited={stats.edited} failed={len(stats.failed_entries)}")


def pause(context: Namespace) -> None:
    """Extra throttle on top of the rate limiter, only when edits are made"""
    if context.dry_run:
        return
    delay = float(context.config.edit_delay or 0)
    if delay > 0:
        time.sleep(delay)


def derive_response(challenge: Namespace | str, password: str) -> str:
    """Compute the LiveJournal challenge-response value.

    The password digest goes into the second round as lowercase hex text,
    appended to the challenge token.
    """
    token = challenge if isinstance(challenge, str) else challenge.token
    password_digest = hashlib.md5(password.encode("utf-8")).hexdigest()
    return hashlib.md5((token + password_digest).encode("utf-8")).hexdigest()


def needs_rewrite(text: str, old_url: str, conflict_url: str) -> bool:
    """True if text links to the legacy host and has not been touched by the
    earlier migration to the bare domain.
    """
    return old_url in text and conflict_url not in text


def rewrite_text(text: str, old_urls: Iterable[str], new_url: str) -> str:
    """Replace every occurrence of each legacy prefix with the new prefix"""
    for old_url in old_urls:
        text = text.replace(old_url, new_url)
    return text


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def find_urls_func(prefix: str | tuple[str, ...]):
    """Return 'find_urls' function that returns a sorted list of the image and
    link urls found in an html string that start with any of the given prefixes.
    """

    def find_urls(text: str) -> list[str]:
        html = htmlparser(text)
        urls: set[str] = set()

        for img in html.find_all("img"):
            src = img.get("src")
            if isinstance(src, str) and src.startswith(prefix):
                urls.add(src)

        for a in html.find_all("a"):
            href = a.get("href")
            if isinstance(href, str) and href.startswith(prefix):
                urls.add(href)

        return sorted(urls)

    return find_urls


def validate_fields(fields: Mapping[str, Mapping[str, str]] | None = None) -> None:
    """Check the wire mapping table. Each shape must map to distinct, non-empty
    wire names.
    """
    fields = FIELDS if fields is None else fields
    for shape, mapping in fields.items():
        wire_names = list(mapping.values())
        for name in wire_names:
            if not isinstance(name, str) or not name:
                raise ValueError(f"Bad wire name {name!r} in {shape!r}")
        if len(set(wire_names)) != len(wire_names):
            raise ValueError(f"Duplicate wire names in {shape!r}")


def from_wire(shape: str, struct) -> Namespace:
    """Build a record from a response struct. Fields the server sends that we
    don't know about are ignored and missing fields are None.
 Base64 values must decode as
    UTF-8 or the struct is rejected.
    """
    if not isinstance(struct, Mapping):
        raise ProtocolError(f"Expected a struct for {shape}, got {type(struct).__name__}")
    values = {}
    for field, wire_name in FIELDS[shape].items():
        value = struct.get(wire_name)
        if isinstance(value, xmlrpc.client.Binary):
            try:
                value = value.data.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolError(f"Field {wire_name!r} of {shape} is not valid UTF-8: {e}") from e
        values[field] = value
    return Namespace(**values)


def to_wire(shape: str, record: Namespace | Mapping) -> dict:
    """Build a request struct from a record. Only declared fields are sent and
    None values are left out.
    """
    values = vars(record) if isinstance(record, Namespace) else record
    return {
        wire_name: values[field]
        for field, wire_name in FIELDS[shape].items()
        if values.get(field) is not None
    }


def dump_exchange(resp: requests.Response, *args, **kwargs) -> None:
    """requests response hook that prints the raw request and response"""
    body = resp.request.body or b""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    print(f"> {resp.request.method} {resp.request.url}")
    print(body)
    print(f"< {resp.status_code} {resp.reason}")
    print(resp.text)


def parse_bool(val: str | bool | None, default: bool = True) -> bool:
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    v = val.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"Invalid boolean value: {val!r}")


def confirm(context: Namespace, prompt: str, token: str) -> bool:
    """Require an interactive confirmation unless --yes was provided."""
    if getattr(context.args, "yes", False):
        return True
    try:
        typed = input(prompt).strip()
    except EOFError:
        print("No confirmation received (EOF). Aborting.")
        return False
    if typed != token:
        print("Confirmation not received. Aborting.")
        return False
    return True


def log(context: Namespace, text: str | None = None) -> None:
    """Append text to the log file, if one is configured. Defaults to logging
    the start of a run. The password is never written.
    """
    log_file = getattr(context.config, "log_file", None)
    if not log_file:
        return
    now = datetime.now().isoformat(sep=" ")
    txt = text if text else f"start account={context.identity.username} dry_run={context.dry_run}"
    with Path(log_file).open("a") as f:
        f.write(f"{now} {txt}\n")


def config() -> Namespace:
    """Collect the config from environment variables.

    This leverages the `dotenv` library to collect default values from .env
    files in the current working directory which can then be overridden by
    the values collected from the environment. The `.env.secrets` file is the
    place for the account password and should not be checked into source control.

    Variable names in the environment should be prefixed by 'LJMIGRATE_'.
    This prefix is stripped and the names then lowercased before being
    merged over the built-in defaults and the values collected from .env files.
    """
    env: dict[str, str | None] = {k.lower(): v for k, v in dotenv_values(".env").items()}
    env_secrets: dict[str, str | None] = {k.lower(): v for k, v in dotenv_values(".env.secrets").items()}

    prefix = "LJMIGRATE_"
    length = len(prefix)
    environ = {k[length:].lower(): v for k, v in os.environ.items() if k.startswith(prefix)}

    return Namespace(**{**DEFAULTS, **env, **env_secrets, **environ})


class LJError(Exception):
    """A LiveJournal call that failed, with the method and the day or entry
    it was about.
    """

    def __init__(self, message: str, method: str | None = None, target: str | int | None = None):
        super().__init__(message)
        self.message = message
        self.method = method
        self.target = target

    def __str__(self) -> str:
        where = [f"{k}={v}" for k, v in (("method", self.method), ("target", self.target)) if v is not None]
        return f"{self.message} ({', '.join(where)})" if where else self.message


class TransportError(LJError):
    """The endpoint could not be reached or answered with an HTTP error"""


class ProtocolError(LJError):
    """The endpoint answered but rejected the call or sent something unreadable"""

    def __init__(self, message: str, method: str | None = None, target: str | int | None = None,
                 fault_code: int | None = None):
        super().__init__(message, method, target)
        self.fault_code = fault_code


class AuthUnavailable(LJError):
    """No challenge could be obtained"""


class NotValidated(LJError):
    """Login worked but the account is not validated"""


class OperationFailed(LJError):
    pass


class LoginFailed(OperationFailed):
    pass


class ListFailed(OperationFailed):
    pass


class EditFailed(OperationFailed):
    pass


class RateLimiter:
    """Fixed-rate pacing. Each `take()` blocks until at least 1/rate seconds
    have passed since the previous one was let through.
    """

    def __init__(self, rate: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if rate <= 0:
            raise ValueError(f"Rate must be positive: {rate!r}")
        self.interval = 1.0 / rate
        self.clock = clock
        self.sleep = sleep
        self.last: float | None = None

    def take(self) -> float:
        now = self.clock()
        if self.last is not None:
            wait = self.last + self.interval - now
            if wait > 0:
                self.sleep(wait)
                now = self.clock()
        self.last = now
        return now


class BaseClient:

    def __init__(self, context: Namespace):
        self.context = context
        self.session = context.session
        self.dry_run = context.dry_run

    def _require_apply(self, action: str) -> None:
        """Refuse to run destructive operations unless explicitly applied."""
        if self.dry_run:
            raise RuntimeError(
                f"Refusing destructive action in dry-run: {action}. "
                "Re-run with --apply (or set LJMIGRATE_DRY_RUN=false) to execute."
            )


class RPCClient(BaseClient):
    """XML-RPC over the shared requests session. Every call first waits for a
    slot from the rate limiter. Failures are raised, never retried.
    """

    def __init__(self, context: Namespace, limiter: RateLimiter | None = None):
        super().__init__(context)
        self.url = context.config.api_url
        self.timeout = float(context.config.timeout)
        self.limiter = limiter or RateLimiter(float(context.config.rate_limit))
        self.headers = {"Content-Type": "text/xml; charset=utf-8"}

    def call(self, method: str, request: dict | None = None) -> dict:
        params = () if request is None else (request,)
        payload = xmlrpc.client.dumps(params, methodname=method, encoding="utf-8")

        self.limiter.take()
        try:
            with self.session.post(
                self.url, data=payload.encode("utf-8"), headers=self.headers, timeout=self.timeout,
            ) as resp:
                resp.raise_for_status()
                (result,), _ = xmlrpc.client.loads(resp.content)
        except requests.RequestException as e:
            raise TransportError(str(e), method) from e
        except xmlrpc.client.Fault as e:
            raise ProtocolError(e.faultString, method, fault_code=e.faultCode) from e
        except (ExpatError, xmlrpc.client.ResponseError, ValueError, TypeError, KeyError) as e:
            raise ProtocolError(f"Malformed response: {e}", method) from e

        if not isinstance(result, dict):
            raise ProtocolError(f"Expected a struct, got {type(result).__name__}", method)
        return result


class LJClient(BaseClient):
    """The four LiveJournal operations the migration needs.

    Each operation fetches its own challenge right before its call; nothing
    is shared between calls except the identity and the RPC connection.
    """

    def __init__(self, context: Namespace, rpc: RPCClient):
        super().__init__(context)
        validate_fields()
        self.rpc = rpc
        self.username = context.identity.username
        self.password = context.identity.password

    def get_challenge(self) -> Namespace:
        method = "LJ.XMLRPC.getchallenge"
        try:
            return from_wire("challenge", self.rpc.call(method))
        except LJError as e:
            raise AuthUnavailable(f"Cannot get challenge: {e.message}", method) from e

    def auth(self) -> dict:
        """Fresh authentication fields for a single call"""
        challenge = self.get_challenge()
        return {
            "username": self.username,
            "auth_method": AUTH_METHOD,
            "challenge": challenge.token,
            "response": derive_response(challenge, self.password),
            "version": PROTOCOL_VERSION,
        }

    def login(self) -> Namespace:
        """Check the credentials. `validated` is None if the server doesn't say."""
        method = "LJ.XMLRPC.login"
        try:
            account = from_wire("login", self.rpc.call(method, to_wire("auth", self.auth())))
            if account.validated is not None:
                account.validated = bool(int(account.validated))
        except LJError as e:
            raise LoginFailed(f"Got error on Login: {e.message}", method, self.username) from e
        except (TypeError, ValueError) as e:
            raise LoginFailed(f"Bad is_validated in login response: {e}", method, self.username) from e
        return account

    def get_day_counts(self) -> list[Namespace]:
        """Days that have entries, newest first as the server sends them"""
        method = "LJ.XMLRPC.getdaycounts"
        try:
            response = self.rpc.call(method, to_wire("auth", self.auth()))
            days = [from_wire("daycount", row) for row in response.get("daycounts") or []]
            for day in days:
                day.count = int(day.count or 0)
        except LJError as e:
            raise ListFailed(f"Cannot get days count: {e.message}", method) from e
        except (TypeError, ValueError) as e:
            raise ListFailed(f"Bad count in days count: {e}", method) from e
        return days

    def get_events(self, date: str) -> list[Namespace]:
        """Entries posted on a single day, given as YYYY-MM-DD"""
        method = "LJ.XMLRPC.getevents"
        try:
            year, month, day = date.split("-")
        except (AttributeError, ValueError) as e:
            raise ListFailed(f"Bad date {date!r}", method, date) from e

        try:
            request = {
                **self.auth(),
                "selecttype": "day",
                "year": year,
                "month": month,
                "day": day,
                "noprops": 0,
            }
            response = self.rpc.call(method, to_wire("getevents", request))
            return [from_wire("entry", row) for row in response.get("events") or []]
        except LJError as e:
            raise ListFailed(f"Cannot download entries: {e.message}", method, date) from e

    def edit_entry(self, itemid: int, text: str, subject: str | None, security: str | None,
                   allowmask: int | None = None) -> Namespace:
        """Replace the text of an entry, keeping its subject and security level.
        The friends-group mask only goes back for 'usemask' entries.
        """
        self._require_apply(f"edit_entry itemid={itemid}")
        if security != "usemask":
            allowmask = None
        method = "LJ.XMLRPC.editevent"
        body = normalize_line_endings(text).encode("utf-8")
        try:
            request = {
                **self.auth(),
                "itemid": itemid,
                "event": xmlrpc.client.Binary(body),
                "lineendings": "unix",
                "subject": subject,
                "security": security,
                "allowmask": allowmask,
            }
            return from_wire("edit_result", self.rpc.call(method, to_wire("editevent", request)))
        except LJError as e:
            raise EditFailed(f"Cannot edit entry: {e.message}", method, itemid) from e


if __name__ == "__main__":
    main()
