#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2026 by the prmail developers

import re
import textwrap
import email.utils

import requests

from markdown_it import MarkdownIt
from markdown_it.tree import SyntaxTreeNode

import prmail

from typing import Optional, Tuple, List

logger = prmail.logger

PULL_REQUEST_URL_RE = re.compile(r'^https://github\.com/([^/]+)/([^/]+)/pull/(\d+)$')

MIN_WRAP_WIDTH = 20

HTML_COMMENT_RE = re.compile(r'<!--.*?-->', flags=re.S)


def parse_pull_request_url(url: str) -> Tuple[str, str, int]:
    matches = PULL_REQUEST_URL_RE.search(url)
    if not matches:
        raise RuntimeError('Unrecognized pull request URL: %s' % url)
    owner, repo, prnum = matches.groups()
    return owner, repo, int(prnum)


def _github_get(path: str) -> requests.Response:
    config = prmail.get_main_config()
    apiurl = config.get('github-api-url', 'https://api.github.com').rstrip('/') + path
    req = prmail.get_requests_session()
    headers = {'Accept': 'application/vnd.github.v3+json'}
    # Do we have a GitHub API key?
    ghkey = config.get('github-token')
    if ghkey:
        headers['Authorization'] = f'token {ghkey}'
    logger.debug('Querying %s', apiurl)
    return req.get(apiurl, headers=headers)


def get_pull_request(owner: str, repo: str, prnum: int) -> dict:
    resp = _github_get(f'/repos/{owner}/{repo}/pulls/{prnum}')
    resp.raise_for_status()
    return resp.json()


def get_user_name(login: str) -> Tuple[str, Optional[str]]:
    """Returns the display name and the public email of a GitHub user.

    Falls back to the login when the user did not set a name.
    """
    try:
        resp = _github_get(f'/users/{login}')
        resp.raise_for_status()
    except requests.exceptions.RequestException as ex:
        logger.debug('GitHub REST error: %s', ex)
        return login, None
    udata = resp.json()
    uname = udata.get('name')
    if not uname:
        uname = login
    return uname, udata.get('email')


def get_pr_template(gitdir: Optional[str], revpath: Optional[str]) -> Optional[str]:
    if not revpath:
        return None
    ecode, out = prmail.git_run_command(gitdir, ['show', revpath])
    if ecode > 0:
        logger.debug('No pull request template found at %s', revpath)
        return None
    # Depending on core.autocrlf, the template may have CRLF endings
    return out.replace('\r\n', '\n')


def parse_pull_request_body(body: str) -> Tuple[str, Optional[str], List[str]]:
    """Splits off the footers we understand from a pull request description.

    Returns the remaining description, the Based-On: value (if any) and a
    list of addresses found in Cc: footers. Footer lines we don't know are
    kept as part of the description.
    """
    based_on = None
    cc = list()
    cover_body = body.strip()

    matches = re.search(r'^(.+)\n\n(.+)$', body, flags=re.S)
    if not matches and '\n\n' not in body:
        # Descriptions that consist of nothing but footers
        matches = re.search(r'^()([-A-Za-z]+: .+)$', body, flags=re.S)

    if not matches:
        return cover_body, based_on, cc

    cover_body = matches.groups()[0]
    footer = list()
    for line in matches.groups()[1].rstrip().split('\n'):
        fmatch = re.search(r'^([-A-Za-z]+:)\s*(.*)$', line)
        if not fmatch:
            footer.append(line)
            continue
        fname, fvalue = fmatch.groups()
        if fname.lower() == 'based-on:':
            if based_on:
                raise RuntimeError('Duplicate Based-On footer: %s vs %s' % (based_on, fvalue))
            based_on = fvalue
        elif fname.lower() == 'cc:':
            for pair in email.utils.getaddresses([fvalue]):
                if not pair[1]:
                    continue
                if pair[0]:
                    cc.append(f'{pair[0]} <{pair[1]}>')
                else:
                    cc.append(pair[1])
        else:
            footer.append(line)

    if footer:
        cover_body += '\n\n' + '\n'.join(footer)

    return cover_body, based_on, cc


def _fill(text: str, width: int) -> str:
    # hard line breaks survive the re-flow
    return '\n'.join(textwrap.fill(chunk, width=width, break_long_words=False, break_on_hyphens=False)
                     for chunk in text.split('\n'))


def _inline_text(node: SyntaxTreeNode) -> str:
    out = ''
    for child in node.children:
        if child.type in ('text', 'code_inline'):
            out += child.content
        elif child.type == 'html_inline':
            out += HTML_COMMENT_RE.sub('', child.content)
        elif child.type == 'softbreak':
            out += ' '
        elif child.type == 'hardbreak':
            out += '\n'
        elif child.type == 'link':
            ltext = _inline_text(child)
            href = child.attrs.get('href', '')
            if not href or ltext in (href, re.sub(r'^mailto:', '', href)):
                out += ltext
            else:
                out += f'{ltext} [{href}]'
        else:
            # emphasis, images and friends only carry their text
            out += _inline_text(child)
    return out


def _quote_lines(text: str) -> str:
    lines = list()
    for line in text.split('\n'):
        if not line:
            lines.append('>')
        elif line.startswith('>'):
            lines.append('>' + line)
        else:
            lines.append('> ' + line)
    return '\n'.join(lines)


def _render_list(node: SyntaxTreeNode, width: int) -> str:
    items = list()
    number = int(node.attrs.get('start', 1))
    for item in node.children:
        if node.type == 'ordered_list':
            marker = f' {number}. '
            number += 1
        else:
            marker = ' * '
        indent = ' ' * len(marker)
        body = _render_blocks(item.children, max(MIN_WRAP_WIDTH, width - len(marker)))
        lines = body.split('\n')
        rendered = [(marker + lines[0]).rstrip()]
        rendered += [indent + line if line else '' for line in lines[1:]]
        items.append('\n'.join(rendered))
    return '\n'.join(items)


def _render_blocks(nodes: List[SyntaxTreeNode], width: int, quoted: bool = False) -> str:
    blocks = list()
    for node in nodes:
        if node.type == 'heading':
            title = _fill(_inline_text(node.children[0]), width)
            blocks.append(title + '\n' + '=' * len(title.split('\n')[-1]))
        elif node.type == 'paragraph':
            blocks.append(_fill(_inline_text(node.children[0]), width))
        elif node.type in ('bullet_list', 'ordered_list'):
            blocks.append(_render_list(node, width))
        elif node.type == 'blockquote':
            # ">" nests without a space, the outermost quote adds "> "
            inner_width = max(MIN_WRAP_WIDTH, width - (1 if quoted else 2))
            blocks.append(_quote_lines(_render_blocks(node.children, inner_width, quoted=True)))
        elif node.type in ('code_block', 'fence'):
            blocks.append(node.content.rstrip('\n'))
        elif node.type == 'html_block':
            # PR templates leave their instructions in comments
            html = HTML_COMMENT_RE.sub('', node.content).strip('\n')
            if html.strip():
                blocks.append(html)
        elif node.type == 'hr':
            blocks.append('-' * width)
    return '\n\n'.join(blocks)


def render_plain_text(markdown: str, width: int) -> str:
    """Renders a Markdown description as plain text suitable for a mail.

    Paragraphs, list items and quotes are re-flowed to fit into width
    columns, headings get underlined, links are spelled out and code is
    left untouched.
    """
    md = MarkdownIt('commonmark', {'maxNesting': 100})
    tree = SyntaxTreeNode(md.parse(markdown.replace('\r\n', '\n')))
    return _render_blocks(tree.children, width)


def parse_pull_request(title: str, body: str, width: int, indent: str = '',
                       template: Optional[str] = None) -> Tuple[Optional[str], List[str], str]:
    """Turns a pull request title and description into cover letter text.

    Returns the Based-On: branch, the extra Cc: addresses and the text.
    """
    body = body.replace('\r\n', '\n')
    if template:
        body = body.replace(template, '', 1)

    cover_body, based_on, cc = parse_pull_request_body(body)
    cover = title + '\n'
    if cover_body:
        cover += '\n' + cover_body
    cover = render_plain_text(cover, width)
    if indent:
        cover = re.sub(r'^(?=.)', indent, cover, flags=re.M)

    return based_on, cc, cover
