#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2026 by the prmail developers

import argparse
import logging
import prmail
import sys

logger = prmail.logger


def cmd_series_common_opts(sp):
    sp.add_argument('-g', '--gitdir', default=None,
                    help='Operate on this git tree instead of current dir')
    sp.add_argument('-n', '--dry-run', dest='dryrun', action='store_true', default=False,
                    help='Do not send, tag or record anything, just show what would be sent')
    sp.add_argument('--preview', action='store_true', default=False,
                    help='Send as [PREVIEW] without recording a new iteration (also allows resending)')
    sp.add_argument('--rfc', action='store_true', default=False,
                    help='Mark the series as [PATCH/RFC]')
    sp.add_argument('--patience', action='store_true', default=False,
                    help='Generate the diffs using the patience algorithm')
    sp.add_argument('--force-date', dest='forcedate', action='store_true', default=False,
                    help='Rewrite the Date: headers to be one second apart, ending now')


def cmd_submit(cmdargs):
    import prmail.series
    prmail.series.cmd_submit(cmdargs)


def cmd_send(cmdargs):
    import prmail.series
    prmail.series.cmd_send(cmdargs)


def setup_parser() -> argparse.ArgumentParser:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        prog='prmail',
        description='A tool to send pull requests and branches to mailing lists as patch series',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=prmail.__VERSION__)
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Add more debugging info to the output')
    parser.add_argument('-q', '--quiet', action='store_true', default=False,
                        help='Output critical information only')
    parser.add_argument('--offline-mode', action='store_true', default=False,
                        help='Do not perform any network queries')

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    # prmail submit
    sp_submit = subparsers.add_parser('submit', help='Send a GitHub pull request to the mailing list')
    cmd_series_common_opts(sp_submit)
    sp_submit.add_argument('--publish-to', dest='publish_to', default=None,
                           help='Push the notes and the new tag to this remote after sending')
    sp_submit.add_argument('pull_request_url',
                           help='Pull request to send, e.g. https://github.com/owner/repo/pull/123')
    sp_submit.set_defaults(func=cmd_submit)

    # prmail send
    sp_send = subparsers.add_parser('send', help='Send a local branch to the mailing list')
    cmd_series_common_opts(sp_send)
    sp_send.add_argument('-b', '--branch', default=None,
                         help='Branch to send (default: current branch)')
    sp_send.add_argument('--base', required=True,
                         help='Upstream branch the series is based on')
    sp_send.add_argument('--redo', action='store_true', default=False,
                         help='Resend the latest iteration instead of starting a new one')
    sp_send.set_defaults(func=cmd_send)

    return parser


def cmd():
    parser = setup_parser()
    cmdargs = parser.parse_args()
    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if cmdargs.quiet:
        ch.setLevel(logging.CRITICAL)
    elif cmdargs.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.INFO)

    logger.addHandler(ch)

    if 'func' not in cmdargs:
        parser.print_help()
        sys.exit(1)

    if cmdargs.offline_mode:
        logger.info('Running in OFFLINE mode')
        prmail.can_network = False

    cmdargs.func(cmdargs)


if __name__ == '__main__':
    cmd()
