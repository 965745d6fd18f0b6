#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2026 by the prmail developers

import argparse
import re
import sys
import time
import smtplib
import datetime
import email.utils
import email.quoprimime
import urllib.parse

import requests

import prmail
import prmail.forge
import prmail.tracking

from typing import Optional, List, Callable, Tuple

logger = prmail.logger

SUBJECT_MARKER = '*** SUBJECT HERE ***'
BLURB_MARKER = '*** BLURB HERE ***'


def _split_at_marker(body: str, marker: str) -> Optional[Tuple[str, str]]:
    # Markers only count when they are on a line of their own
    matches = re.search('^' + re.escape(marker) + '$', body, flags=re.M)
    if not matches:
        return None
    return body[:matches.start()], body[matches.start():]


def _config_addrs(value: Optional[str]) -> List[str]:
    if not value:
        return list()
    return [prmail.format_addrs([pair]) for pair in email.utils.getaddresses([value]) if pair[1]]


def insert_cc_and_from_lines(mails: List[prmail.PatchMail], this_author: str,
                             sender_name: Optional[str] = None, bot_name: Optional[str] = None) -> None:
    """Makes sure every mail is sent from us, while crediting the real author.

    Mails authored by someone else get the author added to Cc: and an
    in-body From: line, so that applying the patch keeps the authorship.
    When we are a bot, the visible sender becomes "<author> via <bot>".
    """
    is_bot = bool(bot_name) and this_author.startswith(f'{bot_name} <')

    for at, pmail in enumerate(mails):
        author = pmail.get('From')
        if author is None:
            raise RuntimeError('No From: line found in mail #%s:\n\n%s' % (at, pmail.as_string()))
        author = author.strip()

        if is_bot:
            if at == 0 and sender_name:
                onbehalf = sender_name
            else:
                onbehalf = email.utils.parseaddr(prmail.clean_header(author))[0]
                if not onbehalf:
                    onbehalf = email.utils.parseaddr(author)[1]
            botaddr = this_author[len(bot_name) + 1:]
            vianame = f'{onbehalf} via {bot_name}'
            if vianame.isascii():
                replace_sender = f'"{email.utils.quote(vianame)}" {botaddr}'
            else:
                replace_sender = email.quoprimime.header_encode(vianame.encode(), charset='utf-8') + ' ' + botaddr
        elif author == this_author:
            continue
        else:
            replace_sender = prmail.encode_sender(this_author)

        pmail.set_header('From', replace_sender)
        if len(mails) > 1 and at == 0 and sender_name:
            # The cover letter needs no Cc: or in-body From:
            continue

        cc = pmail.get('Cc')
        if cc is None:
            pmail.set_header('Cc', author)
        else:
            authoraddr = email.utils.parseaddr(author)[1].lower()
            known = {x[1].lower() for x in email.utils.getaddresses([cc])}
            if authoraddr not in known:
                pmail.set_header('Cc', cc + ',\n    ' + author)

        pmail.body = 'From: %s\n\n' % prmail.clean_header(author) + pmail.body


def insert_cover_letter(pmail: prmail.PatchMail, cover_letter: str) -> None:
    matches = re.search(r'^((?:.*?\n\n)?' + re.escape(BLURB_MARKER) + r'\n\n)(.*)$', pmail.body, flags=re.S)
    if not matches:
        raise RuntimeError('Could not find blurb in:\n\n%s' % pmail.as_string())
    pmail.body = matches.groups()[0] + cover_letter + '\n\n' + matches.groups()[1]


def adjust_cover_letter(pmail: prmail.PatchMail, cover_letter: Optional[str] = None) -> None:
    """Replaces the format-patch placeholders with the real subject and blurb.

    The first paragraph after the blurb placeholder becomes the subject.
    """
    if cover_letter:
        insert_cover_letter(pmail, cover_letter)

    smatch = re.search(r'^(.* )' + re.escape(SUBJECT_MARKER) + '$', pmail.get('Subject', ''))
    bmatch = re.search(r'^((?:.*?\n\n)?)' + re.escape(BLURB_MARKER) + r'\n\n(.*?)\n\n(.*)$',
                       pmail.body, flags=re.S)
    if not smatch or not bmatch:
        raise RuntimeError('Could not parse cover letter:\n\n%s' % pmail.as_string())

    before, title, rest = bmatch.groups()
    # Long titles become folded headers
    subject = re.sub(r'\n(?=.)', '\n ', title)
    pmail.set_header('Subject', smatch.groups()[0] + subject)
    pmail.body = before + rest


def generate_tag_message(pmail: prmail.PatchMail, is_cover_letter: bool, mid_url_prefix: str,
                         in_reply_to: Optional[List[str]] = None) -> str:
    subject = pmail.get('Subject')
    marker = '-- ' if is_cover_letter else '---'
    parts = _split_at_marker(pmail.body, marker)
    if subject is None or parts is None:
        raise RuntimeError('Could not generate tag message from mail:\n\n%s' % pmail.as_string())

    subject = re.sub(r'^\[.*?\] ', '', subject, flags=re.S)
    # Subjects can contain continuation lines, keep only the space
    subject = re.sub(r'\n *', ' ', subject)

    footer = list()
    if pmail.msgid:
        footer.append(f'Submitted-As: {mid_url_prefix}{pmail.msgid}')
    if in_reply_to:
        for msgid in in_reply_to:
            footer.append(f'In-Reply-To: {mid_url_prefix}{msgid}')

    tag_message = subject + '\n\n' + parts[0].rstrip('\n')
    if footer:
        tag_message += '\n\n' + '\n'.join(footer)
    return tag_message


def insert_links(tag_message: str, url: str, tag_name: str, based_on: Optional[str] = None) -> str:
    if not url:
        return tag_message

    matches = re.search(r'^https?(://github\.com/.*)$', url)
    if matches:
        url = 'https' + matches.groups()[0]
    else:
        matches = re.search(r'^(?:git@)?github\.com:(.*?)(?:\.git)?$', url)
        if not matches:
            return tag_message
        url = 'https://github.com/' + matches.groups()[0]

    insert = f'Published-As: {url}/releases/tag/{tag_name}\nFetch-It-Via: git fetch {url} {tag_name}\n'
    if based_on:
        insert = f'Based-On: {based_on} at {url}\nFetch-Base-Via: git fetch {url} {based_on}\n' + insert

    if not re.search(r'\n[-A-Za-z]+: [^\n]*\n\Z', tag_message):
        insert = '\n' + insert
    return tag_message + insert


def insert_footers(pmail: prmail.PatchMail, is_cover_letter: bool, footers: List[str]) -> None:
    body = pmail.body
    if is_cover_letter:
        parts = _split_at_marker(body, '-- ')
        if parts is None:
            raise RuntimeError('Failed to find range-diff insertion point for\n\n%s' % pmail.as_string())
        pmail.body = parts[0] + '\n'.join(footers) + '\n' + parts[1]
        return

    # Skip any footer block that is already after the --- line
    matches = re.search(r'^---\n(\n[A-Za-z:]+ .*?\n\n)?', body, flags=re.M | re.S)
    if not matches:
        raise RuntimeError('Failed to find range-diff insertion point for\n\n%s' % pmail.as_string())
    at = matches.end()
    lead = '' if matches.groups()[0] else '\n'
    pmail.body = body[:at] + lead + '\n'.join(footers) + '\n\n' + body[at:]


def rewrite_message_ids(mails: List[prmail.PatchMail], pull_request_url: str, iteration: int,
                        this_author: str, canonical_owner: Optional[str] = None) -> str:
    cover_mid = mails[0].msgid
    if not cover_mid:
        raise RuntimeError('Could not extract cover letter Message-ID')

    matches = re.search(r'cover\.([0-9]+)\.', cover_mid)
    if matches:
        timestamp = matches.groups()[0]
    else:
        timestamp = str(int(time.time() * 1000))

    matches = re.search(r'<(.*)>', this_author)
    if not matches:
        raise RuntimeError('Could not parse email of %s' % this_author)
    myemail = matches.groups()[0]

    owner, repo, prnum = prmail.forge.parse_pull_request_url(pull_request_url)
    infix = f'.v{iteration}' if iteration > 1 else ''
    repo_infix = repo if owner == canonical_owner else f'{owner}.{repo}'
    new_mid = f'pull.{prnum}{infix}.{repo_infix}.{timestamp}.{myemail}'
    logger.debug('Rewriting %s as %s', cover_mid, new_mid)
    for pmail in mails:
        pmail.replace_all(cover_mid, new_mid)

    return new_mid


def adjust_date_headers(mails: List[prmail.PatchMail], force_date: datetime.datetime) -> int:
    """Spaces the mails one second apart, with the last one sent at force_date."""
    count = 0
    total = len(mails)
    for at, pmail in enumerate(mails):
        when = force_date - datetime.timedelta(seconds=total - 1 - at)
        pmail.set_header('Date', email.utils.format_datetime(when.astimezone(datetime.timezone.utc)))
        count += 1
    return count


def get_mail_sender(dryrun: bool = False) -> Callable[[str], Optional[str]]:
    config = prmail.get_main_config()
    smtp, fromaddr = prmail.get_smtp(dryrun=dryrun)
    sign = prmail.can_patatt and config.get('send-no-patatt-sign', '').lower() not in {'yes', 'true', 'y'}

    def _send(mail: str) -> Optional[str]:
        return prmail.send_raw_mail(smtp, fromaddr, mail, patatt_sign=sign)

    return _send


class PatchSeries:
    def __init__(self, tracker: prmail.tracking.SeriesTracker, metadata: prmail.tracking.SeriesMetadata,
                 range_diff: str, patch_count: int, branch_name: str, cover_letter: Optional[str] = None,
                 sender_name: Optional[str] = None, to: Optional[List[str]] = None, cc: Optional[List[str]] = None,
                 based_on: Optional[str] = None, publish_remote: Optional[str] = None, gitdir: Optional[str] = None,
                 dryrun: bool = False, noupdate: bool = False, rfc: bool = False, patience: bool = False,
                 redo: bool = False):
        self.tracker = tracker
        self.notes = tracker.notes
        self.metadata = metadata
        self.range_diff = range_diff
        self.patch_count = patch_count
        self.branch_name = branch_name
        self.cover_letter = cover_letter
        self.sender_name = sender_name
        self.to = to if to is not None else list()
        self.cc = cc if cc is not None else list()
        self.based_on = based_on
        self.publish_remote = publish_remote
        self.gitdir = gitdir
        self.dryrun = dryrun
        self.noupdate = noupdate
        self.rfc = rfc
        self.patience = patience
        self.redo = redo

    @classmethod
    def from_pull_request(cls, notes, pull_request_url: str, title: str, body: str,
                          base_label: str, base_commit: str, head_label: str, head_commit: str,
                          sender_name: Optional[str] = None, sender_email: Optional[str] = None,
                          gitdir: Optional[str] = None, **kwargs) -> 'PatchSeries':
        config = prmail.get_main_config()
        tracker = prmail.tracking.SeriesTracker(notes, pull_request_url, gitdir=gitdir)
        metadata, range_diff, patch_count = tracker.start_iteration(base_label, base_commit, head_label, head_commit,
                                                                    pull_request_url=pull_request_url,
                                                                    noupdate=kwargs.get('noupdate', False),
                                                                    redo=kwargs.get('redo', False))

        # Single patches carry the description below the --- line
        indent = '' if patch_count > 1 else '    '
        width = int(config.get('wrap-column', '76')) - len(indent)
        template = prmail.forge.get_pr_template(gitdir, config.get('pr-template'))
        based_on, cc, cover_letter = prmail.forge.parse_pull_request(title, body, width, indent, template)

        # if known, add the submitter to the thread
        if sender_email:
            cc.append(f'{sender_name} <{sender_email}>')
        if based_on and not prmail.git_rev_parse(gitdir, based_on):
            raise RuntimeError('Cannot find base branch %s' % based_on)

        return cls(tracker, metadata, range_diff, patch_count, head_commit, cover_letter=cover_letter,
                   sender_name=sender_name, to=_config_addrs(config.get('send-series-to')),
                   cc=_config_addrs(config.get('send-series-cc')) + cc, based_on=based_on, gitdir=gitdir, **kwargs)

    @classmethod
    def from_branch(cls, notes, branch: str, base: str, gitdir: Optional[str] = None, **kwargs) -> 'PatchSeries':
        config = prmail.get_main_config()
        base_commit = prmail.git_rev_parse(gitdir, base)
        if not base_commit:
            raise RuntimeError('Cannot determine tip of %s' % base)
        head_commit = prmail.git_rev_parse(gitdir, branch)
        if not head_commit:
            raise RuntimeError('Cannot determine tip of %s' % branch)

        tracker = prmail.tracking.SeriesTracker(notes, branch, gitdir=gitdir)
        metadata, range_diff, patch_count = tracker.start_iteration(base, base_commit, branch, head_commit,
                                                                    noupdate=kwargs.get('noupdate', False),
                                                                    redo=kwargs.get('redo', False))

        ecode, out = prmail.git_run_command(gitdir, ['config', f'branch.{branch}.description'])
        cover_letter = out.strip() if ecode == 0 else None

        return cls(tracker, metadata, range_diff, patch_count, branch, cover_letter=cover_letter,
                   to=_config_addrs(config.get('send-series-to')), cc=_config_addrs(config.get('send-series-cc')),
                   publish_remote=config.get('publish-remote'), gitdir=gitdir, **kwargs)

    def subject_prefix(self) -> str:
        return prmail.tracking.subject_prefix(self.metadata.iteration, noupdate=self.noupdate, rfc=self.rfc)

    def generate_mbox(self) -> str:
        config = prmail.get_main_config()
        merge_base = prmail.git_merge_base(self.gitdir, self.metadata.base_commit, self.branch_name)
        args = ['--thread', f'--signature={config.get("signature")}', f'--base={merge_base}']
        args += [f'--to={x}' for x in self.to]
        args += prmail.get_singleton_header_args()
        args += [f'--cc={prmail.encode_sender(x)}' for x in self.cc]
        if self.metadata.references_message_ids:
            # Thread against the most recent iteration
            args.append(f'--in-reply-to={self.metadata.references_message_ids[-1]}')
        args.append(f'--subject-prefix={self.subject_prefix()}')
        if self.patch_count > 1:
            if not self.cover_letter:
                raise RuntimeError('Branch %s needs a description' % self.branch_name)
            args.append('--cover-letter')
        if self.patience:
            args.append('--patience')

        return prmail.git_format_patch(self.gitdir, f'{self.metadata.base_commit}..{self.branch_name}', args)

    def publish_branch(self, tag_name: str) -> None:
        if not self.publish_remote or self.noupdate or self.dryrun:
            return
        logger.info('Publishing branch and tag to %s', self.publish_remote)
        if self.redo:
            tag_name = '+' + tag_name
        prmail.git_push(self.gitdir, self.publish_remote, [f'+{self.branch_name}', tag_name])

    def record_mail_metadata(self, mails: List[prmail.PatchMail]) -> None:
        is_cover_letter = len(mails) > 1
        for pmail in mails:
            msgid = pmail.msgid
            if not msgid:
                continue
            original_commit = None
            if is_cover_letter:
                is_cover_letter = False
            else:
                original_commit = pmail.original_commit
            mailmeta = prmail.tracking.MailMetadata(msgid, original_commit=original_commit,
                                                    pull_request_url=self.metadata.pull_request_url)
            self.notes.set(msgid, mailmeta.to_dict())
            if original_commit and prmail.git_rev_parse(self.gitdir, f'{original_commit}^{{commit}}'):
                self.notes.append_commit_note(original_commit, msgid)

    def generate_and_send(self, send: Optional[Callable[[str], Optional[str]]] = None,
                          publish_remote: Optional[str] = None, pull_request_url: Optional[str] = None,
                          force_date: Optional[datetime.datetime] = None) -> Optional[str]:
        """Generates, sends and records one iteration of the series.

        Returns the Message-Id of the cover letter (or of the single patch).
        """
        config = prmail.get_main_config()
        if self.dryrun:
            logger.info('Dry-run %s v%s', self.branch_name, self.metadata.iteration)
        else:
            logger.info('Submitting %s v%s', self.branch_name, self.metadata.iteration)

        logger.info('Generating mbox')
        mbox = self.generate_mbox()
        mails = [prmail.PatchMail.from_string(x) for x in prmail.split_mails(mbox)]
        prmail.remove_duplicate_headers(mails)

        this_author = prmail.git_get_author_ident(self.gitdir)
        logger.info('Adding Cc: and explicit From: lines for other authors, if needed')
        insert_cc_and_from_lines(mails, this_author, self.sender_name, bot_name=config.get('bot-name'))
        if len(mails) > 1:
            logger.info('Fixing Subject: line of the cover letter')
            adjust_cover_letter(mails[0], self.cover_letter)

        cover_mid = mails[0].msgid
        if self.metadata.pull_request_url:
            cover_mid = rewrite_message_ids(mails, self.metadata.pull_request_url, self.metadata.iteration,
                                            this_author, canonical_owner=config.get('canonical-owner'))
        self.metadata.cover_letter_message_id = cover_mid

        logger.info('Generating tag message')
        tag_message = generate_tag_message(mails[0], len(mails) > 1, config.get('mid-url-prefix'),
                                           self.metadata.references_message_ids)
        tag_name = prmail.tracking.get_tag_name(self.metadata, canonical_owner=config.get('canonical-owner'))
        if self.publish_remote:
            ecode, out = prmail.git_run_command(self.gitdir, ['config', f'remote.{self.publish_remote}.url'])
            if ecode > 0 or not out.strip():
                raise RuntimeError('Remote %s lacks URL' % self.publish_remote)
            logger.info('Inserting links')
            tag_message = insert_links(tag_message, out.strip(), tag_name, self.based_on)

        if self.noupdate or self.dryrun:
            logger.info('Would generate tag %s with message:\n\n%s', tag_name,
                        '\n'.join('    ' + line for line in tag_message.split('\n')))
        else:
            logger.info('Generating tag object %s', tag_name)
            prmail.git_create_tag(self.gitdir, tag_name, self.metadata.head_commit, tag_message, force=self.redo)
            self.metadata.latest_tag = tag_name

        if pull_request_url is None:
            pull_request_url = self.metadata.pull_request_url
        footers = list()
        if pull_request_url:
            owner, repo, prnum = prmail.forge.parse_pull_request_url(pull_request_url)
            prefix = f'https://github.com/{owner}/{repo}'
            footers.append(f'Published-As: {prefix}/releases/tag/{urllib.parse.quote(tag_name, safe="")}')
            footers.append(f'Fetch-It-Via: git fetch {prefix} {tag_name}')
            footers.append(f'Pull-Request: {pull_request_url}')
        if self.range_diff:
            if footers:
                footers.append('')
            # Indent the range-diff by one space
            indented = re.sub(r'(^|\n(?!\Z))', r'\1 ', self.range_diff.rstrip('\n'))
            footers.append(f'Range-diff vs v{self.metadata.iteration - 1}:\n\n{indented}\n')

        if footers:
            logger.info('Inserting footers')
            insert_footers(mails[0], len(mails) > 1, footers)

        # Single patches get the description after the footers
        if len(mails) == 1 and self.cover_letter:
            if self.patch_count != 1:
                raise RuntimeError('Patch count mismatch: %s vs %s' % (len(mails), self.patch_count))
            parts = _split_at_marker(mails[0].body, '---')
            if parts is None:
                raise RuntimeError('No --- found in:\n\n%s' % mails[0].as_string())
            mails[0].body = parts[0] + '---\n' + self.cover_letter + '\n' + parts[1][4:]

        if force_date:
            logger.info('Adjusting Date headers')
            adjust_date_headers(mails, force_date)

        if self.dryrun:
            mbox = '\n'.join(x.as_string() for x in mails)
            logger.info('Would send this mbox:\n\n%s', '\n'.join('    ' + line for line in mbox.split('\n')))
        else:
            if send is None:
                send = get_mail_sender()
            logger.info('Sending %s messages', len(mails))
            for pmail in mails:
                send(pmail.as_string())

            logger.info('Updating the mail metadata')
            self.record_mail_metadata(mails)

        self.publish_branch(tag_name)

        if not self.dryrun and not self.noupdate:
            self.tracker.save(self.metadata)

        if not self.noupdate and not self.dryrun and publish_remote:
            refspecs = [f'refs/tags/{tag_name}']
            if self.redo:
                refspecs = ['+' + refspecs[0]]
            if self.notes.notes_ref:
                refspecs.insert(0, self.notes.notes_ref)
            logger.info('Pushing %s to %s', ', '.join(refspecs), publish_remote)
            prmail.git_push(self.gitdir, publish_remote, refspecs)

        return self.metadata.cover_letter_message_id


def _run_series(series: PatchSeries, cmdargs: argparse.Namespace, publish_remote: Optional[str] = None) -> None:
    force_date = None
    if cmdargs.forcedate:
        force_date = datetime.datetime.now(datetime.timezone.utc)
    try:
        msgid = series.generate_and_send(publish_remote=publish_remote, force_date=force_date)
    except (RuntimeError, smtplib.SMTPException) as ex:
        logger.critical('CRITICAL: %s', ex)
        sys.exit(1)
    if cmdargs.dryrun:
        return
    logger.info('---')
    logger.info('Sent v%s, cover letter Message-Id: %s', series.metadata.iteration, msgid)


def cmd_submit(cmdargs: argparse.Namespace) -> None:
    try:
        owner, repo, prnum = prmail.forge.parse_pull_request_url(cmdargs.pull_request_url)
    except RuntimeError as ex:
        logger.critical('CRITICAL: %s', ex)
        sys.exit(1)

    if not prmail.can_network:
        logger.critical('CRITICAL: Cannot query pull requests in offline mode')
        sys.exit(1)

    try:
        prdata = prmail.forge.get_pull_request(owner, repo, prnum)
    except requests.exceptions.RequestException as ex:
        logger.critical('CRITICAL: Could not retrieve %s: %s', cmdargs.pull_request_url, ex)
        sys.exit(1)

    base = prdata.get('base', {})
    head = prdata.get('head', {})
    user = prdata.get('user', {})
    sender_name, sender_email = prmail.forge.get_user_name(user.get('login'))

    repourl = f'https://github.com/{owner}/{repo}'
    logger.info('Fetching %s from %s', head.get('label'), repourl)
    try:
        prmail.git_fetch(cmdargs.gitdir, repourl, [f'refs/pull/{prnum}/head', f'refs/heads/{base.get("ref")}'])
        notes = prmail.tracking.GitNotes(cmdargs.gitdir)
        series = PatchSeries.from_pull_request(notes, cmdargs.pull_request_url, prdata.get('title', ''),
                                               prdata.get('body') or '', base.get('label'), base.get('sha'),
                                               head.get('label'), head.get('sha'),
                                               sender_name=sender_name, sender_email=sender_email,
                                               gitdir=cmdargs.gitdir, dryrun=cmdargs.dryrun,
                                               noupdate=cmdargs.preview, rfc=cmdargs.rfc, patience=cmdargs.patience)
    except prmail.AlreadySubmittedError as ex:
        logger.critical('CRITICAL: %s', ex)
        logger.critical('          Push new commits to the pull request, or use --preview to reprint it.')
        sys.exit(1)
    except RuntimeError as ex:
        logger.critical('CRITICAL: %s', ex)
        sys.exit(1)

    _run_series(series, cmdargs, publish_remote=cmdargs.publish_to)


def cmd_send(cmdargs: argparse.Namespace) -> None:
    branch = cmdargs.branch
    if not branch:
        branch = prmail.git_get_current_branch(cmdargs.gitdir)
        if not branch:
            sys.exit(1)

    try:
        notes = prmail.tracking.GitNotes(cmdargs.gitdir)
        series = PatchSeries.from_branch(notes, branch, cmdargs.base, gitdir=cmdargs.gitdir, dryrun=cmdargs.dryrun,
                                         noupdate=cmdargs.preview, rfc=cmdargs.rfc, patience=cmdargs.patience,
                                         redo=cmdargs.redo)
    except prmail.AlreadySubmittedError as ex:
        logger.critical('CRITICAL: %s', ex)
        logger.critical('          Commit your changes first, or use --preview to reprint it.')
        sys.exit(1)
    except RuntimeError as ex:
        logger.critical('CRITICAL: %s', ex)
        sys.exit(1)

    _run_series(series, cmdargs)
