import pytest  # noqa
import prmail
import prmail.forge
import os
import requests


class FakeResponse:
    def __init__(self, data, status=200):
        self.data = data
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f'{self.status_code} Error')

    def json(self):
        return self.data


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.requests = list()

    def get(self, url, headers=None):
        self.requests.append((url, headers))
        if url not in self.responses:
            return FakeResponse({'message': 'Not Found'}, status=404)
        return FakeResponse(self.responses[url])


@pytest.mark.parametrize('url,expected', [
    ('https://github.com/gitgitgadget/git/pull/1', ('gitgitgadget', 'git', 1)),
    ('https://github.com/someone/some.repo/pull/1234', ('someone', 'some.repo', 1234)),
])
def test_parse_pull_request_url(url, expected):
    assert prmail.forge.parse_pull_request_url(url) == expected


@pytest.mark.parametrize('url', [
    'https://github.com/gitgitgadget/git/issues/1',
    'https://example.com/someone/git/pull/1',
    'ab/topic',
])
def test_parse_pull_request_url_invalid(url):
    with pytest.raises(RuntimeError):
        prmail.forge.parse_pull_request_url(url)


@pytest.mark.parametrize('body,cover,based_on,cc', [
    ('Some description\n\nBased-On: ab/topic\nCc: Some One <one@example.com>, two@example.com',
     'Some description', 'ab/topic', ['Some One <one@example.com>', 'two@example.com']),
    ('Cc: one@example.com', '', None, ['one@example.com']),
    ('Some description\n\nSigned-off-by: A U Thor <author@example.com>\nCc: one@example.com',
     'Some description\n\nSigned-off-by: A U Thor <author@example.com>', None, ['one@example.com']),
    ('Just text\n\nMore text', 'Just text\n\nMore text', None, []),
    ('Just some text', 'Just some text', None, []),
])
def test_parse_pull_request_body(body, cover, based_on, cc):
    assert prmail.forge.parse_pull_request_body(body) == (cover, based_on, cc)


def test_parse_pull_request_body_duplicate_based_on():
    with pytest.raises(RuntimeError, match='Duplicate Based-On'):
        prmail.forge.parse_pull_request_body('Description\n\nBased-On: one\nBased-On: two')


@pytest.mark.parametrize('markdown,width,expected', [
    ('one two three four five six', 10, 'one two\nthree four\nfive six'),
    ('## Changes', 76, 'Changes\n======='),
    ('Intro\n## Changes\nSome text', 76, 'Intro\n\nChanges\n=======\n\nSome text'),
    ('- first item that wraps around\n- second', 24, ' * first item that wraps\n   around\n * second'),
    ('- first\n  continued\n- second', 76, ' * first continued\n * second'),
    ('1. one\n2. two', 76, ' 1. one\n 2. two'),
    ('This series fixes:\n- the frobnicator\n- the widget', 76,
     'This series fixes:\n\n * the frobnicator\n * the widget'),
    ('Some code:\n\n    code   stays\n    as   is', 10, 'Some code:\n\ncode   stays\nas   is'),
    ('```\nfenced    code\n\nwith a gap\n```\nafter', 76, 'fenced    code\n\nwith a gap\n\nafter'),
    ('Text\n\n<!-- Describe your change here -->', 76, 'Text'),
    ('Some *emphasis* and `code`', 76, 'Some emphasis and code'),
    ('See [the docs](https://example.com/docs) and [https://example.com](https://example.com)', 76,
     'See the docs [https://example.com/docs] and https://example.com'),
    ('Windows\r\nline\r\n\r\nendings', 76, 'Windows line\n\nendings'),
])
def test_render_plain_text(markdown, width, expected):
    assert prmail.forge.render_plain_text(markdown, width) == expected


WELCOME_MD = '''# Welcome to GitGitGadget
A paragraph with [links](https://gitgitgadget.github.io/), with

* a
* list
* of
* items that might span more than seventy-six characters in a single item and therefore needs to be wrapped.

> Starting a block quote.
>
>> Previously quoted ipsum loren.

> Back to the base quote.'''

WELCOME_TEXT = '''Welcome to GitGitGadget
=======================

A paragraph with links [https://gitgitgadget.github.io/], with

 * a
 * list
 * of
 * items that might span more than seventy-six characters in a single item
   and therefore needs to be wrapped.

> Starting a block quote.
>
>> Previously quoted ipsum loren.

> Back to the base quote.'''


def test_render_plain_text_document():
    assert prmail.forge.render_plain_text(WELCOME_MD, 76) == WELCOME_TEXT


def test_render_plain_text_task_list():
    tasks = 'This is a task list:\n* [x] done item\n* [ ] item still to do'
    assert prmail.forge.render_plain_text(tasks, 76) == ('This is a task list:\n\n'
                                                          ' * [x] done item\n'
                                                          ' * [ ] item still to do')


QUOTED_LINE = '3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5'


@pytest.mark.parametrize('markdown,expected', [
    ('> ' + QUOTED_LINE, '> ' + QUOTED_LINE),
    # a quoted line of exactly 76 columns is not wrapped
    ('> 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 90 2 4 6',
     '> 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 90 2 4 6'),
    ('> ' + QUOTED_LINE + ' 7', '> ' + QUOTED_LINE + '\n> 7'),
    ('> ' + QUOTED_LINE + '\n>>> 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7',
     '> ' + QUOTED_LINE + '\n>\n>>> 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5\n>>> 7'),
    # deeply nested quotes still get 20 columns of text
    ('> ' + QUOTED_LINE + '\n' + '>' * 56 + ' 89 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7',
     '> ' + QUOTED_LINE + '\n>\n'
     + '>' * 56 + ' 89 1 3 5 7 9 1 3 5 7\n'
     + '>' * 56 + ' 9 1 3 5 7 9 1 3 5 7\n'
     + '>' * 56 + ' 9 1 3 5 7 9 1 3 5 7\n'
     + '>' * 56 + ' 9 1 3 5 7'),
    ('> ' + QUOTED_LINE + '\n' + '>' * 61 + ' 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7',
     '> ' + QUOTED_LINE + '\n>\n'
     + '>' * 61 + ' 3 5 7 9 1 3 5 7 9 1\n'
     + '>' * 61 + ' 3 5 7 9 1 3 5 7 9 1\n'
     + '>' * 61 + ' 3 5 7 9 1 3 5 7 9 1\n'
     + '>' * 61 + ' 3 5 7'),
    ('> ' + QUOTED_LINE + '\n' + '>' * 61 + ' 3 5 7 9 1 3 56 8 0 23 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7 9 1 3 5 7',
     '> ' + QUOTED_LINE + '\n>\n'
     + '>' * 61 + ' 3 5 7 9 1 3 56 8 0\n'
     + '>' * 61 + ' 23 5 7 9 1 3 5 7 9 1\n'
     + '>' * 61 + ' 3 5 7 9 1 3 5 7 9 1\n'
     + '>' * 61 + ' 3 5 7'),
])
def test_render_plain_text_quotes(markdown, expected):
    assert prmail.forge.render_plain_text('Some text\n\n' + markdown, 76) == 'Some text\n\n' + expected


def test_parse_pull_request_with_list():
    based_on, cc, cover = prmail.forge.parse_pull_request(
        'Fix things', 'This series fixes:\n- the frobnicator\n- the widget\n\nThanks', 76)
    assert cover == 'Fix things\n\nThis series fixes:\n\n * the frobnicator\n * the widget\n\nThanks'


def test_parse_pull_request():
    based_on, cc, cover = prmail.forge.parse_pull_request(
        'Fix the frobnicator', 'It was broken.\r\n\r\nCc: a@example.com', 76)
    assert based_on is None
    assert cc == ['a@example.com']
    assert cover == 'Fix the frobnicator\n\nIt was broken.'


def test_parse_pull_request_indented():
    based_on, cc, cover = prmail.forge.parse_pull_request(
        'Fix the frobnicator', 'It was broken.\n\nBased-On: ab/topic', 76, indent='    ')
    assert based_on == 'ab/topic'
    assert cc == []
    assert cover == '    Fix the frobnicator\n\n    It was broken.'


def test_parse_pull_request_template():
    template = '<!-- Please describe your change -->\n'
    based_on, cc, cover = prmail.forge.parse_pull_request(
        'Fix the frobnicator', 'It was broken.\n' + template, 76, template=template)
    assert cover == 'Fix the frobnicator\n\nIt was broken.'


def test_get_pull_request(monkeypatch):
    prmail.MAIN_CONFIG['github-token'] = 'sekrit'
    session = FakeSession({
        'https://api.github.com/repos/someone/git/pulls/22': {'number': 22, 'title': 'Some title'},
    })
    monkeypatch.setattr(prmail, 'get_requests_session', lambda: session)
    prdata = prmail.forge.get_pull_request('someone', 'git', 22)
    assert prdata['title'] == 'Some title'
    url, headers = session.requests[0]
    assert headers['Authorization'] == 'token sekrit'
    with pytest.raises(requests.exceptions.HTTPError):
        prmail.forge.get_pull_request('someone', 'git', 23)


@pytest.mark.parametrize('login,expected', [
    ('someone', ('Some One', 'some@one.example.com')),
    ('noname', ('noname', None)),
    ('missing', ('missing', None)),
])
def test_get_user_name(monkeypatch, login, expected):
    session = FakeSession({
        'https://api.github.com/users/someone': {'login': 'someone', 'name': 'Some One',
                                                 'email': 'some@one.example.com'},
        'https://api.github.com/users/noname': {'login': 'noname', 'name': None, 'email': None},
    })
    monkeypatch.setattr(prmail, 'get_requests_session', lambda: session)
    assert prmail.forge.get_user_name(login) == expected
    url, headers = session.requests[0]
    assert 'Authorization' not in headers


def test_get_pr_template(gitdir):
    os.makedirs(os.path.join(gitdir, '.github'))
    with open(os.path.join(gitdir, '.github', 'PULL_REQUEST_TEMPLATE.md'), 'w') as fh:
        fh.write('<!-- Please describe your change -->\r\n')
    prmail.git_run_command(gitdir, ['add', '.github'])
    ecode, out = prmail.git_run_command(gitdir, ['commit', '-q', '-m', 'Add template'])
    assert ecode == 0
    template = prmail.forge.get_pr_template(gitdir, 'HEAD:.github/PULL_REQUEST_TEMPLATE.md')
    assert template == '<!-- Please describe your change -->\n'
    assert prmail.forge.get_pr_template(gitdir, 'HEAD:.github/nonexistent.md') is None
    assert prmail.forge.get_pr_template(gitdir, None) is None
