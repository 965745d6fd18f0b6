import pytest  # noqa
import prmail
import os


@pytest.fixture(scope="function", autouse=True)
def settestdefaults(tmp_path):
    topdir = prmail.git_get_toplevel()
    if topdir and topdir != os.getcwd():
        os.chdir(topdir)
    prmail.can_patatt = False
    prmail.can_network = False
    prmail.MAIN_CONFIG = dict(prmail.DEFAULT_CONFIG)
    prmail.USER_CONFIG = {
        'name': 'Test Override',
        'email': 'test-override@example.com',
    }


@pytest.fixture(scope="function")
def sampledir(request):
    return os.path.join(request.fspath.dirname, 'samples')


@pytest.fixture(scope="function")
def gitdir(tmp_path):
    ecode, out = prmail.git_run_command(None, ['--version'])
    if ecode > 0:
        pytest.skip('git is not available')
    dest = os.path.join(tmp_path, 'repo')
    prmail.git_run_command(None, ['init', '-q', '-b', 'master', dest])
    for key, val in (('user.name', 'A U Thor'), ('user.email', 'author@example.com'),
                     ('commit.gpgsign', 'false'), ('tag.gpgsign', 'false')):
        prmail.git_run_command(dest, ['config', key, val])
    olddir = os.getcwd()
    os.chdir(dest)
    yield dest
    os.chdir(olddir)
