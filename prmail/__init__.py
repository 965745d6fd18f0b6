# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2026 by the prmail developers
import subprocess
import logging
import re
import os
import fnmatch
import email.utils
import email.header
import email.quoprimime
import smtplib
import shlex
import copy
# noinspection PyCompatibility
import pwd

import requests

from typing import Optional, Tuple, List, Union

try:
    import patatt
    can_patatt = True
except ModuleNotFoundError:
    can_patatt = False

# global setting allowing us to turn off networking
can_network = True

__VERSION__ = '0.1.0'

logger = logging.getLogger('prmail')

# Presence of these characters requires quoting of the name in the header
qspecials = re.compile(r'[()<>@,:;.\\"\[\]]')

# git format-patch starts every exported mail with this line
MBOX_SPLIT_RE = re.compile(r'\n(?=From [0-9a-f]{40} Mon Sep 17 00:00:00 2001\n)')
MBOX_FROM_RE = re.compile(r'^From ([0-9a-f]{40}) ')

# The first value of each entry is what we ask format-patch to emit
SINGLETON_HEADERS = [
    ('Content-Description', []),
    ('Content-ID', []),
    ('Content-Type', ['text/plain; charset=UTF-8', 'text/plain; charset="UTF-8"',
                      'text/plain; charset=utf-8', 'text/plain']),
    ('Content-Transfer-Encoding', ['8bit', '7bit']),
    ('MIME-Version', ['1.0']),
]

# Headers that are spelled in many ways by various tools
CANONICAL_HEADERS = {
    'message-id': 'Message-Id',
    'date': 'Date',
}

NOT_YET_SENT = 'not yet sent'

DEFAULT_CONFIG = {
    # Prepended to message-ids to make them into links
    'mid-url-prefix': 'https://lore.kernel.org/all/',
    # If the sender identity uses this display name, send "<author> via <bot-name>"
    'bot-name': None,
    # PRs against repositories of this owner get unqualified tag names and message-ids
    'canonical-owner': None,
    'notes-ref': 'refs/notes/prmail',
    # Push the branch, the tag and the notes to this remote after sending
    'publish-remote': None,
    'send-series-to': None,
    'send-series-cc': None,
    # Passed to format-patch --signature
    'signature': 'prmail',
    'wrap-column': '76',
    'range-diff-creation-factor': '95',
    'github-api-url': 'https://api.github.com',
    # If not set, we use GITHUB_TOKEN from the environment
    'github-token': None,
    # rev:path of the pull request template to strip from PR descriptions
    'pr-template': None,
    # When sending mail, use this sendemail identity configuration
    'sendemail-identity': None,
    'send-no-patatt-sign': 'yes',
}

# This is where we store actual config
MAIN_CONFIG = None
# This is git-config user.*
USER_CONFIG = None
# This is git-config sendemail.*
SENDEMAIL_CONFIG = None

# Used for storing our requests session
REQSESSION = None


class AlreadySubmittedError(RuntimeError):
    pass


class StaleMetadataError(RuntimeError):
    pass


class PatchMail:
    """One mail of an exported patch series.

    Headers are kept as an ordered list of (name, value) tuples, with any
    folded continuation lines left inside the value, so that converting a
    mail back to a string reproduces the exported text exactly.
    """
    unixfrom: Optional[str]
    headers: List[Tuple[str, str]]
    body: str

    def __init__(self, headers: Optional[List[Tuple[str, str]]] = None, body: str = '',
                 unixfrom: Optional[str] = None):
        if headers is None:
            headers = list()
        self.headers = headers
        self.body = body
        self.unixfrom = unixfrom

    def __repr__(self):
        return '<PatchMail %s>' % self.get('Subject')

    @classmethod
    def from_string(cls, mail: str) -> 'PatchMail':
        unixfrom = None
        rest = mail
        if mail.startswith('From '):
            unixfrom, rest = mail.split('\n', maxsplit=1) if '\n' in mail else (mail, '')

        eoh = rest.find('\n\n')
        if eoh < 0:
            raise RuntimeError('No header found in mail:\n\n%s' % mail)

        headers = list()
        for line in rest[:eoh].split('\n'):
            if line[:1] in (' ', '\t') and headers:
                hname, hval = headers[-1]
                headers[-1] = (hname, hval + '\n' + line)
                continue
            hname, sep, hval = line.partition(':')
            if not sep:
                raise RuntimeError('Malformed header line "%s" in mail:\n\n%s' % (line, mail))
            if hval.startswith(' '):
                hval = hval[1:]
            headers.append((hname, hval))

        return cls(headers, rest[eoh+2:], unixfrom)

    def as_string(self, unixfrom: bool = True) -> str:
        out = ''
        if unixfrom and self.unixfrom is not None:
            out += self.unixfrom + '\n'
        for hname, hval in self.headers:
            out += f'{hname}: {hval}\n'
        return out + '\n' + self.body

    def get(self, hname: str, default: Optional[str] = None) -> Optional[str]:
        for key, hval in self.headers:
            if key.lower() == hname.lower():
                return hval
        return default

    def get_all(self, hname: str) -> List[str]:
        return [hval for key, hval in self.headers if key.lower() == hname.lower()]

    def set_header(self, hname: str, hval: str) -> None:
        """Replace the first header with this name, or add a new one at the end."""
        for at, (key, oldval) in enumerate(self.headers):
            if key.lower() == hname.lower():
                self.headers[at] = (key, hval)
                return
        self.headers.append((hname, hval))

    @property
    def msgid(self) -> Optional[str]:
        raw = self.get('Message-Id')
        if raw:
            matches = re.search(r'<([^>]+)>', raw)
            if matches:
                return matches.groups()[0]
        return None

    @property
    def original_commit(self) -> Optional[str]:
        if self.unixfrom:
            matches = MBOX_FROM_RE.search(self.unixfrom)
            if matches:
                return matches.groups()[0]
        return None

    def replace_all(self, old: str, new: str) -> None:
        self.headers = [(hname, hval.replace(old, new)) for hname, hval in self.headers]
        self.body = self.body.replace(old, new)

    def normalize_headers(self) -> None:
        renamed = list()
        for hname, hval in self.headers:
            hname = CANONICAL_HEADERS.get(hname.lower(), hname)
            renamed.append((hname, hval))
        self.headers = renamed

        singletons = SINGLETON_HEADERS + [(x, list()) for x in CANONICAL_HEADERS.values()]
        for key, values in singletons:
            first = None
            kept = list()
            for hname, hval in self.headers:
                if hname.lower() != key.lower():
                    kept.append((hname, hval))
                    continue
                if first is None:
                    first = hval.strip()
                    kept.append((hname, hval))
                    continue
                if hval.strip() != first and hval.strip() not in values:
                    logger.warning('Found multiple headers where only one allowed\n    %s: %s\n    %s: %s',
                                   key, first, key, hval.strip())
            self.headers = kept


def split_mails(mbox: str) -> List[str]:
    return MBOX_SPLIT_RE.split(mbox)


def remove_duplicate_headers(mails: List[PatchMail]) -> None:
    for pmail in mails:
        pmail.normalize_headers()


def get_singleton_header_args() -> List[str]:
    results = list()
    for key, values in SINGLETON_HEADERS:
        if values:
            results.append(f'--add-header={key}: {values[0]}')
    return results


def clean_header(hdrval: Optional[str]) -> str:
    if hdrval is None:
        return ''

    if hdrval.find('=?') >= 0:
        # Do we have any email addresses in there?
        if re.search(r'<\S+@\S+>', hdrval, flags=re.I | re.M):
            newaddrs = list()
            for addr in email.utils.getaddresses([hdrval]):
                if addr[0].find('=?') >= 0:
                    # Nothing wrong with nested calls, right?
                    addr = (clean_header(addr[0]), addr[1])
                # formataddr would encode it right back, so put it together ourselves
                if not addr[0]:
                    newaddrs.append(addr[1])
                elif qspecials.search(addr[0]):
                    newaddrs.append(f'"{email.utils.quote(addr[0])}" <{addr[1]}>')
                else:
                    newaddrs.append(f'{addr[0]} <{addr[1]}>')
            return ', '.join(newaddrs)

        decoded = ''
        for hstr, hcs in email.header.decode_header(hdrval):
            if hcs is None:
                hcs = 'utf-8'
            try:
                decoded += hstr.decode(hcs, errors='replace')
            except LookupError:
                # Try as utf-8
                decoded += hstr.decode('utf-8', errors='replace')
            except (UnicodeDecodeError, AttributeError):
                decoded += hstr
    else:
        decoded = hdrval

    new_hdrval = re.sub(r'\n?\s+', ' ', decoded)
    return new_hdrval.strip()


def encode_sender(sender: str) -> str:
    matches = re.search(r'^([^<]*?)(\s*)(<.*)$', sender, flags=re.S)
    if not matches:
        return sender
    name, spacer, addr = matches.groups()
    if not name:
        return sender
    if not name.isascii():
        return email.quoprimime.header_encode(name.encode(), charset='utf-8') + spacer + addr
    # Don't quote if already quoted
    if name.startswith('"') and name.endswith('"') and len(name) > 1:
        return sender
    if qspecials.search(name):
        return f'"{email.utils.quote(name)}"{spacer}{addr}'
    return sender


def format_addrs(pairs, clean=True):
    addrs = list()
    for pair in pairs:
        if pair[0] == pair[1] or not pair[0]:
            addrs.append(pair[1])
            continue
        if clean:
            # Remove any quoted-printable header junk from the name
            pair = (clean_header(pair[0]), pair[1])
        addrs.append(encode_sender(f'{pair[0]} <{pair[1]}>'))
    return ', '.join(addrs)


def _run_command(cmdargs: List[str], stdin: Optional[bytes] = None,
                 rundir: Optional[str] = None) -> Tuple[int, bytes, bytes]:
    if rundir:
        logger.debug('Changing dir to %s', rundir)
        curdir = os.getcwd()
        os.chdir(rundir)
    else:
        curdir = None

    logger.debug('Running %s' % ' '.join(cmdargs))
    sp = subprocess.Popen(cmdargs, stdout=subprocess.PIPE, stdin=subprocess.PIPE, stderr=subprocess.PIPE)
    (output, error) = sp.communicate(input=stdin)
    if curdir:
        logger.debug('Changing back into %s', curdir)
        os.chdir(curdir)

    return sp.returncode, output, error


def git_run_command(gitdir: Optional[str], args: List[str], stdin: Optional[bytes] = None,
                    logstderr: bool = False, decode: bool = True) -> Tuple[int, Union[str, bytes]]:
    cmdargs = ['git', '--no-pager']
    if gitdir:
        if os.path.exists(os.path.join(gitdir, '.git')):
            gitdir = os.path.join(gitdir, '.git')
        cmdargs += ['--git-dir', gitdir]

    cmdargs += args

    ecode, out, err = _run_command(cmdargs, stdin=stdin)

    if decode:
        out = out.decode(errors='replace')

    if logstderr and len(err.strip()):
        if decode:
            err = err.decode(errors='replace')
        logger.debug('Stderr: %s', err)
        out += err

    return ecode, out


def git_checked_output(gitdir: Optional[str], args: List[str], stdin: Optional[bytes] = None) -> str:
    ecode, out = git_run_command(gitdir, args, stdin=stdin, logstderr=True)
    if ecode > 0:
        raise RuntimeError('git %s failed: %s' % (' '.join(args), out.strip()))
    return out


def git_get_command_lines(gitdir: Optional[str], args: list) -> List[str]:
    ecode, out = git_run_command(gitdir, args)
    lines = list()
    if out:
        for line in out.split('\n'):
            if line == '':
                continue
            lines.append(line)

    return lines


def git_credential_fill(gitdir: Optional[str], protocol: str, host: str, username: str) -> Optional[str]:
    stdin = f'protocol={protocol}\nhost={host}\nusername={username}\n'.encode()
    ecode, out = git_run_command(gitdir, args=['credential', 'fill'], stdin=stdin)
    if ecode == 0:
        for line in out.splitlines():
            if not line.startswith('password='):
                continue
            chunks = line.split('=', maxsplit=1)
            return chunks[1]
    return None


def git_get_toplevel(path: Optional[str] = None) -> Optional[str]:
    topdir = None
    # Are we in a git tree and if so, what is our toplevel?
    gitargs = ['rev-parse', '--show-toplevel']
    lines = git_get_command_lines(path, gitargs)
    if len(lines) == 1:
        topdir = lines[0]
    return topdir


def git_get_current_branch(gitdir: Optional[str] = None, short: bool = True) -> Optional[str]:
    gitargs = ['symbolic-ref', '-q', 'HEAD']
    ecode, out = git_run_command(gitdir, gitargs)
    if ecode > 0:
        logger.critical('Not able to get current branch (git symbolic-ref HEAD)')
        return None
    mybranch = out.strip()
    if short:
        return re.sub(r'^refs/heads/', '', mybranch)
    return mybranch


def git_rev_parse(gitdir: Optional[str], rev: str) -> Optional[str]:
    ecode, out = git_run_command(gitdir, ['rev-parse', '-q', '--verify', rev])
    if ecode > 0:
        return None
    return out.strip()


def git_rev_list(gitdir: Optional[str], revrange: str) -> List[str]:
    return git_checked_output(gitdir, ['rev-list', revrange]).split()


def git_rev_list_count(gitdir: Optional[str], revrange: str) -> int:
    out = git_checked_output(gitdir, ['rev-list', '--count', '--no-merges', revrange])
    return int(out.strip())


def git_merge_base(gitdir: Optional[str], commit1: str, commit2: str) -> str:
    return git_checked_output(gitdir, ['merge-base', commit1, commit2]).strip()


def git_command_exists(gitdir: Optional[str], command: str) -> bool:
    # Sub-commands print their usage and exit with 129 when given -h
    ecode, out = git_run_command(gitdir, [command, '-h'])
    return ecode == 129


def git_range_diff(gitdir: Optional[str], range1: str, range2: str,
                   creation_factor: Optional[str] = None) -> str:
    gitargs = ['range-diff', '--no-color']
    if creation_factor:
        gitargs.append(f'--creation-factor={creation_factor}')
    gitargs += [range1, range2]
    return git_checked_output(gitdir, gitargs)


def git_format_patch(gitdir: Optional[str], revrange: str, args: List[str]) -> str:
    return git_checked_output(gitdir, ['format-patch', '--stdout'] + args + [revrange])


def git_get_author_ident(gitdir: Optional[str]) -> str:
    ident = git_checked_output(gitdir, ['var', 'GIT_AUTHOR_IDENT'])
    matches = re.search(r'.*>', ident)
    if not matches:
        raise RuntimeError('Could not determine author ident from %s' % ident)
    return matches.group(0)


def git_create_tag(gitdir: Optional[str], tagname: str, commit: str, message: str, force: bool = False) -> None:
    gitargs = ['tag', '-F', '-', '-a']
    if force:
        gitargs.append('-f')
    gitargs += [tagname, commit]
    git_checked_output(gitdir, gitargs, stdin=message.encode())


def git_push(gitdir: Optional[str], remote: str, refspecs: List[str]) -> None:
    git_checked_output(gitdir, ['push', remote] + refspecs)


def git_fetch(gitdir: Optional[str], remote: str, refspecs: List[str]) -> None:
    git_checked_output(gitdir, ['fetch', remote] + refspecs)


def get_config_from_git(regexp: str, defaults: Optional[dict] = None,
                        multivals: Optional[list] = None, source: Optional[str] = None) -> dict:
    if multivals is None:
        multivals = list()
    args = ['config']
    if source:
        args += ['--file', source]
    args += ['-z', '--get-regexp', regexp]
    ecode, out = git_run_command(None, args)
    gitconfig = defaults
    if not gitconfig:
        gitconfig = dict()
    if not out:
        return gitconfig

    for line in out.split('\x00'):
        if not line:
            continue
        try:
            key, value = line.split('\n', 1)
            chunks = key.split('.')
            cfgkey = chunks[-1].lower()
            if cfgkey in multivals:
                if cfgkey not in gitconfig:
                    gitconfig[cfgkey] = list()
                gitconfig[cfgkey].append(value)
            else:
                gitconfig[cfgkey] = value
        except ValueError:
            logger.debug('Ignoring git config entry %s', line)

    return gitconfig


def get_main_config() -> dict:
    global MAIN_CONFIG
    if MAIN_CONFIG is None:
        defcfg = copy.deepcopy(DEFAULT_CONFIG)
        # some options can be provided via the toplevel .prmail-config file,
        # so load them up and use as defaults
        topdir = git_get_toplevel()
        wtglobs = ['send-*', 'mid-url-prefix', 'canonical-owner', 'pr-template', 'wrap-column']
        if topdir:
            wtcfg = os.path.join(topdir, '.prmail-config')
            if os.access(wtcfg, os.R_OK):
                logger.debug('Loading worktree configs from %s', wtcfg)
                wtconfig = get_config_from_git(r'prmail\..*', source=wtcfg)
                logger.debug('wtcfg=%s', wtconfig)
                for key, val in wtconfig.items():
                    for wtglob in wtglobs:
                        if fnmatch.fnmatch(key, wtglob):
                            logger.debug('wtcfg: %s=%s', key, val)
                            defcfg[key] = val
                            break
        config = get_config_from_git(r'prmail\..*', defaults=defcfg)
        if not config.get('github-token'):
            config['github-token'] = os.environ.get('GITHUB_TOKEN')

        MAIN_CONFIG = config

    return MAIN_CONFIG


def get_user_config():
    global USER_CONFIG
    if USER_CONFIG is None:
        USER_CONFIG = get_config_from_git(r'user\..*')
        if 'name' not in USER_CONFIG:
            udata = pwd.getpwuid(os.getuid())
            USER_CONFIG['name'] = udata.pw_gecos
    return USER_CONFIG


def get_sendemail_config() -> dict:
    global SENDEMAIL_CONFIG
    if SENDEMAIL_CONFIG is None:
        # Get the default settings first
        config = get_main_config()
        identity = config.get('sendemail-identity')
        _basecfg = get_config_from_git(r'sendemail\.[^.]+$')
        if identity:
            # Use this identity to override what we got from the default one
            sconfig = get_config_from_git(rf'sendemail\.{identity}\..*', defaults=_basecfg)
            sectname = f'sendemail.{identity}'
            if not len(sconfig):
                raise smtplib.SMTPException('Unable to find %s settings in any applicable git config' % sectname)
        else:
            sconfig = _basecfg
            sectname = 'sendemail'
        logger.debug('Using values from %s', sectname)
        SENDEMAIL_CONFIG = sconfig

    return SENDEMAIL_CONFIG


def get_requests_session():
    global REQSESSION
    if REQSESSION is None:
        REQSESSION = requests.session()
        REQSESSION.headers.update({'User-Agent': 'prmail/%s' % __VERSION__})
    return REQSESSION


def get_smtp(dryrun: bool = False) -> Tuple[Union[smtplib.SMTP, smtplib.SMTP_SSL, list, None], str]:
    sconfig = get_sendemail_config()
    # Limited support for smtp settings to begin with, but should cover the vast majority of cases
    fromaddr = sconfig.get('from')
    if not fromaddr:
        # We fall back to user.email
        usercfg = get_user_config()
        fromaddr = usercfg['email']

    server = sconfig.get('smtpserver', 'localhost')
    port = sconfig.get('smtpserverport', 0)
    try:
        port = int(port)
    except ValueError:
        raise smtplib.SMTPException('Invalid smtpport entry in config')

    # If server contains slashes, then it's a local command
    if '/' in server:
        server = os.path.expanduser(os.path.expandvars(server))
        sp = shlex.shlex(server, posix=True)
        sp.whitespace_split = True
        smtp = list(sp)
        if '-i' not in smtp:
            smtp.append('-i')
        # Do we have the envelopesender defined?
        env_sender = sconfig.get('envelopesender', '')
        if env_sender:
            envpair = email.utils.parseaddr(env_sender)
        else:
            envpair = email.utils.parseaddr(fromaddr)
        if envpair[1]:
            smtp += ['-f', envpair[1]]
        return smtp, fromaddr

    encryption = sconfig.get('smtpencryption')
    if dryrun:
        return None, fromaddr

    logger.info('Connecting to %s:%s', server, port)
    # We only authenticate if we have encryption
    if encryption:
        if encryption in ('tls', 'starttls'):
            # We do startssl
            smtp = smtplib.SMTP(server, port)
            # Introduce ourselves
            smtp.ehlo()
            # Start encryption
            smtp.starttls()
            # Introduce ourselves again to get new criteria
            smtp.ehlo()
        elif encryption in ('ssl', 'smtps'):
            # We do TLS from the get-go
            smtp = smtplib.SMTP_SSL(server, port)
        else:
            raise smtplib.SMTPException('Unclear what to do with smtpencryption=%s' % encryption)

        # If we got to this point, we should do authentication.
        auser = sconfig.get('smtpuser')
        apass = sconfig.get('smtppass')
        if auser and not apass:
            # Try with git-credential-helper
            if port:
                gchost = f'{server}:{port}'
            else:
                gchost = server
            apass = git_credential_fill(None, protocol='smtp', host=gchost, username=auser)
            if not apass:
                raise smtplib.SMTPException('No password specified for connecting to %s' % server)
        if auser and apass:
            # Let any exceptions bubble up
            smtp.login(auser, apass)
    else:
        # We assume you know what you're doing if you don't need encryption
        smtp = smtplib.SMTP(server, port)

    return smtp, fromaddr


def send_raw_mail(smtp: Union[smtplib.SMTP, smtplib.SMTP_SSL, list], fromaddr: str, mail: str,
                  patatt_sign: bool = False) -> Optional[str]:
    pmail = PatchMail.from_string(mail)
    alldests = email.utils.getaddresses(pmail.get_all('to') + pmail.get_all('cc'))
    destaddrs = [x[1] for x in alldests if x[1]]
    if not destaddrs:
        raise RuntimeError('No recipients found in "%s"' % clean_header(pmail.get('Subject')))

    bdata = pmail.as_string(unixfrom=False).encode()
    if patatt_sign:
        try:
            bdata = patatt.rfc2822_sign(bdata)
        except patatt.NoKeyError as ex:
            logger.critical('CRITICAL: Error signing: no key configured')
            logger.critical('          Run "patatt genkey" or configure "user.signingKey" to use PGP')
            raise RuntimeError(str(ex))
        except patatt.SigningError as ex:
            raise RuntimeError('Failure trying to patatt-sign: %s' % str(ex))

    logger.info('  %s', clean_header(pmail.get('Subject')))
    if isinstance(smtp, list):
        # This is a local command
        ecode, out, err = _run_command(list(smtp) + destaddrs, stdin=bdata)
        if ecode > 0:
            raise RuntimeError('Error running %s: %s' % (' '.join(smtp), err.decode()))
    else:
        # Force compliant eols
        bdata = re.sub(rb'\r\n|\n|\r(?!\n)', b'\r\n', bdata)
        smtp.sendmail(fromaddr, destaddrs, bdata)

    return pmail.msgid
