""" utility for printing jira tickets as github markdown """
import argparse
from collections import namedtuple
import itertools
import json
import logging
import os
import pathlib
import random
import re
import sys
import time

import colorama
import requests

# Ensure colored output on win32 platforms
colorama.init()

TOOLVERSION = 1
TOOLDATE = "2026-10-19"

EXIT_SUCCESS = 0
EXIT_FAIL = 1

# Environment variables used when no config/auth file provides the value
ENV_HOST = 'ATLASSIAN_HOST'
ENV_USER = 'ATLASSIAN_API_USER'
ENV_TOKEN = 'ATLASSIAN_API_TOKEN'

DEFAULT_TIMEOUT = 30

# Retry exponential delay with jitter
RETRY_INITIAL = 0.25
RETRY_FACTOR = 2
RETRY_MAX_DELAY = 8
RETRY_MAX = 4
RETRY_STATUS = (429, 500, 502, 503, 504)


class JiraError(Exception):
    """ Failed request against the Jira REST API """

    def __init__(self, message, status_code=None, reason=None):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


# -----------------------------------------------------------------------------
#  JIRA CLIENT
#
class JiraClient:
    """ Minimal Jira REST client for fetching issues and users """

    def __init__(self, host, user, token, timeout=DEFAULT_TIMEOUT, session=None):
        self.host = host.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (user, token)
        self.session.headers.update({'Accept': 'application/json'})

    def _get(self, path, what, params=None):
        """ GET with retries on connection errors and transient statuses """
        url = f"{self.host}/rest/api/2/{path}"
        delay = RETRY_INITIAL
        for attempt in itertools.count():
            try:
                res = self.session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as err:
                if attempt >= RETRY_MAX:
                    raise JiraError(f"JIRA Request for {what} failed: {err}") from err
                logging.info(f"Request for {what} failed ({err}), retrying...")
            else:
                if res.status_code not in RETRY_STATUS or attempt >= RETRY_MAX:
                    break
                logging.info(f"Request for {what} returned {res.status_code}, retrying...")

            # Sleep an exponential amount of time, with full jitter
            time.sleep(random.uniform(0, delay))
            delay = min(delay * RETRY_FACTOR, RETRY_MAX_DELAY)

        if not 200 <= res.status_code <= 299:
            raise JiraError(
                f"JIRA Request for {what} returned {res.reason} ({res.status_code})",
                status_code=res.status_code,
                reason=res.reason,
            )
        try:
            return res.json()
        except ValueError as err:
            raise JiraError(f"JIRA Request for {what} returned invalid JSON: {err}",
                            status_code=res.status_code, reason=res.reason) from err

    def get_issue(self, issue):
        """ Fetch issue. Raises JiraError if it does not exist """
        return self._get(f"issue/{issue}", f"issue {issue}")

    def get_user(self, account_id):
        """ Fetch the user record for account_id """
        return self._get("user", f"user {account_id}", params={'accountId': account_id})


# -----------------------------------------------------------------------------
#  MARKUP CONVERSION
#

def subgroups(regex, text, repl):
    """
    Replace all matches of regex in text with repl(groups). groups[0] is the
    complete match and groups[n] the n-th capture group. Groups that did not
    take part in the match are given as ''.
    """
    out = []
    last = 0
    for m in regex.finditer(text):
        groups = [m.group(0)] + [g if g is not None else '' for g in m.groups()]
        out.append(text[last:m.start()])
        out.append(repl(groups))
        last = m.end()
    out.append(text[last:])
    return ''.join(out)


class Jiration(namedtuple('Jiration', ('intent', 'regex', 'template', 'transform'))):
    """
    One Jira markup -> markdown rewrite rule. Exactly one of 'template' (a
    re.sub() replacement string using \\1 back references) or 'transform' (a
    function taking the group list from subgroups()) is set.
    """

    def apply(self, text):
        if self.transform is not None:
            return subgroups(self.regex, text, self.transform)
        return self.regex.sub(self.template, text)


def _rule(intent, pattern, template=None, transform=None, flags=0):
    # \s and \S only cover ASCII whitespace, a no-break space is text
    return Jiration(intent, re.compile(pattern, flags | re.ASCII), template, transform)


# To find the cells of a single-barred header row
RE_TABLEFILLER = re.compile(r'\|[^|]+', re.ASCII)


def sub_tableheader(groups):
    """ ||h1||h2|| -> |h1|h2| followed by a separator row """
    single = groups[1].replace('||', '|')
    return '\n' + single + '\n' + RE_TABLEFILLER.sub('| --- ', single)


# {code} block parameters
CODE_ATTRS = r'(?:title|borderStyle|borderColor|borderWidth|bgColor|titleBGColor)'


# The order matters. Lists and headers go before the inline markers that
# would otherwise match their '*' and '#', block markers go after the inline
# rules, and the table rules work on whole lines so they run last.
JIRATIONS = [
    _rule('unordered lists', r'^[ \t]*(\*+)\s+', flags=re.M,
          transform=lambda g: '  ' * (len(g[1]) - 1) + '* '),
    _rule('ordered lists', r'^[ \t]*(#+)\s+', flags=re.M,
          transform=lambda g: '  ' * (len(g[1]) - 1) + '1. '),
    _rule('headers', r'^h([0-6])\.(.*)$', flags=re.M,
          transform=lambda g: '#' * int(g[1]) + g[2]),
    _rule('bold', r'\*(\S.*)\*', r'**\1**'),
    _rule('italic', r'_(\S.*)_', r'*\1*'),
    _rule('monospaced', r'\{\{([^}]+)\}\}', r'`\1`'),
    # Known to be wrong for ??odd?? lengths and several ?? pairs on a line.
    # Reads two characters at a time, any pair but '??'; the alternatives are
    # split on the first character so at most one of them can match.
    _rule('citations', r'\?\?((?:\?[^?]|\n.|[^?\n][\s\S])+)\?\?', r'<cite>\1</cite>'),
    _rule('inserts', r'\+([^+]*)\+', r'<ins>\1</ins>'),
    _rule('superscript', r'\^([^^]*)\^', r'<sup>\1</sup>'),
    _rule('subscript', r'~([^~]*)~', r'<sub>\1</sub>'),
    _rule('strikethrough', r'(\s+)-(\S+.*?\S)-(\s+)', r'\1~~\2~~\3'),
    # An attribute value stops where the next attribute starts
    _rule('code block',
          r'\{code(:([a-z]+))?([:|]?(' + CODE_ATTRS + r')=(?:(?![:|]?' + CODE_ATTRS + r'=)[^}])+?)*\}',
          r'```\2'),
    _rule('code block end', r'\{code\}', '```'),
    _rule('preformatted', r'\{noformat\}', '```'),
    # Must not match [name|link], which is handled below
    _rule('unnamed links', r'\[([^|]+?)\]', r'<\1>'),
    _rule('images', r'!(.+)!', r'![](\1)'),
    _rule('named links', r'\[(.+?)\|(.+)\]', r'[\1](\2)'),
    _rule('blockquote', r'^bq\.\s+', '> ', flags=re.M),
    # Color is not supported in markdown
    _rule('color', r'\{color:[^}]+\}(.*)\{color\}', r'\1', flags=re.M),
    _rule('panel', r'\{panel:title=([^}]*)\}\n?(.*?)\n?\{panel\}',
          r'\n| \1 |\n| --- |\n| \2 |', flags=re.M),
    _rule('table header', r'^[ \t]*(\|\|.*\|\|)[ \t]*$', flags=re.M,
          transform=sub_tableheader),
    _rule('table indent', r'^[ \t]*\|', '|', flags=re.M),
]


def jira_to_md(text):
    """
    Translate Jira markup to GitHub markdown using the JIRATIONS rules. This
    is a line/pattern rewriter, not a parser, so nested formatting (lists
    inside of lists and similar) will come out imperfect.
    """
    for jiration in JIRATIONS:
        text = jiration.apply(text)
    return text


# 1=marker, 2=account id, 3=closing bracket
RE_MENTION = re.compile(r'(\[~accountid:)([a-zA-Z0-9\-:]+)(\])', re.ASCII)


def resolve_mentions(text, lookup):
    """
    Replace [~accountid:ID] mentions with 'Display Name (email)'. lookup(ID)
    returns the Jira user record. Mentions that can't be resolved are left
    as they were.
    """

    def sub_mention(groups):
        account_id = groups[2]
        try:
            user = lookup(account_id)
        except JiraError as err:
            logging.debug(f"Cannot resolve mention '{groups[0]}': {err}")
            return groups[0]
        if not isinstance(user, dict) or not user.get('displayName'):
            logging.debug(f"Cannot resolve mention '{groups[0]}': no display name")
            return groups[0]
        return f"{user['displayName']} ({user.get('emailAddress') or ''})"

    return subgroups(RE_MENTION, text, sub_mention)


def jira_markup_to_github_markdown(text, lookup):
    """ Resolve user mentions, then translate the markup """
    if not text:
        return ''
    return jira_to_md(resolve_mentions(text, lookup))


# -----------------------------------------------------------------------------
#  CONFIG
#

def readjson(filename, default, what):
    """ Read the json file, or the default file if it exists """
    if not filename and pathlib.Path(default).exists():
        filename = default
    if not filename:
        return {}
    logging.info(f"Reading {what} from '{filename}'")
    with open(filename, 'r') as f:
        return json.load(f)


def check_config(config, parser, required, what):

    missing = [
        k for k in required
        if not isinstance(config.get(k), str) or not config[k] or (config[k].startswith('**') and config[k].endswith('**'))
    ]
    if missing:
        parser.error(f"Missing {what} fields: {' '.join(missing)}")


def load_config(options, parser):
    """ Combine config file, auth file and environment into one dict """
    config = readjson(options.config, 'config.json', 'configuration')
    auth = readjson(options.auth, 'auth.json', 'authentication data')

    config.setdefault('host', os.environ.get(ENV_HOST))
    auth.setdefault('user', os.environ.get(ENV_USER))
    auth.setdefault('token', os.environ.get(ENV_TOKEN))

    check_config(config, parser, ('host', ), f'config (or {ENV_HOST})')
    check_config(auth, parser, ('user', 'token'), f'auth (or {ENV_USER}/{ENV_TOKEN})')

    config['auth'] = auth
    config.setdefault('timeout', DEFAULT_TIMEOUT)
    return config


class ColorFormatter(logging.Formatter):
    """ Logger for formatting colored console output """
    def format(self, record):
        # Replace the original format with one customized by logging level
        self._style._fmt = {
            logging.ERROR: f'{colorama.Fore.RED}%(levelname)s:{colorama.Style.RESET_ALL} %(msg)s',
            logging.WARNING: f'{colorama.Fore.YELLOW}%(levelname)s:{colorama.Style.RESET_ALL} %(msg)s',
        }.get(record.levelno, '%(levelname)s: %(msg)s')
        return super().format(record)


# -----------------------------------------------------------------------------
#  MAIN
#
def main(argv=None):
    parser = argparse.ArgumentParser(description="Print a Jira ticket as GitHub markdown")
    parser.add_argument('--verbose', '-v', action="count", default=0, help='verbose logging')
    parser.add_argument('--config', '-c', metavar="JSON", help="Configuration file")
    parser.add_argument('--auth', '-a', metavar="JSON", help='Authentication config')
    parser.add_argument('--no-title', action="store_true", help="Do not print title")
    parser.add_argument('--no-description', action="store_true", help="Do not print description")
    parser.add_argument('ticket', help="Ticket to print, e.g. PROJ-123")

    options = parser.parse_args(argv)

    # -------------------------------------------------------------------------
    #  Logging

    # log to stderr, stdout is for the markdown
    logging_level = {0: logging.WARNING, 1: logging.INFO}.get(options.verbose, logging.DEBUG)
    root = logging.getLogger()
    root.setLevel(logging_level)
    channel = logging.StreamHandler(sys.stderr)
    channel.setLevel(logging_level)
    channel.setFormatter(ColorFormatter())
    root.addHandler(channel)

    try:
        logging.info(f"Running wti v{TOOLVERSION} ({TOOLDATE})")

        config = load_config(options, parser)
        client = JiraClient(config['host'], config['auth']['user'], config['auth']['token'],
                            timeout=config['timeout'])

        logging.info(f"Fetching issue '{options.ticket}'")
        try:
            issue = client.get_issue(options.ticket)
        except JiraError as err:
            logging.error(str(err))
            return EXIT_FAIL

        fields = issue.get('fields') or {}
        if not options.no_title:
            print(f"{issue.get('key')} - {fields.get('summary')}\n")
        if not options.no_description:
            print(jira_markup_to_github_markdown(fields.get('description'), client.get_user))

        return EXIT_SUCCESS
    finally:
        root.removeHandler(channel)


if __name__ == "__main__":
    sys.exit(main())
