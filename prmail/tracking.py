#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2026 by the prmail developers

import copy
import json

import prmail
import prmail.forge

from typing import Optional, Tuple, List, Dict

logger = prmail.logger


class SeriesMetadata:
    """Everything we need to remember between two iterations of a series.

    Stored as JSON in the annotation store, keyed by the pull request URL
    (or by the branch name for local submissions). Keys we don't know about
    are carried over untouched, so other tools can add their own.
    """
    _jsonkeys = {
        'pull_request_url': 'pullRequestURL',
        'base_commit': 'baseCommit',
        'base_label': 'baseLabel',
        'head_commit': 'headCommit',
        'head_label': 'headLabel',
        'iteration': 'iteration',
        'cover_letter_message_id': 'coverLetterMessageId',
        'references_message_ids': 'referencesMessageIds',
        'latest_tag': 'latestTag',
        'previous_base_commit': 'previousBaseCommit',
        'previous_head_commit': 'previousHeadCommit',
    }

    def __init__(self, base_commit: str, base_label: str, head_commit: str, head_label: str,
                 iteration: int = 1, pull_request_url: Optional[str] = None,
                 cover_letter_message_id: Optional[str] = None,
                 references_message_ids: Optional[List[str]] = None,
                 latest_tag: Optional[str] = None, previous_base_commit: Optional[str] = None,
                 previous_head_commit: Optional[str] = None):
        self.base_commit = base_commit
        self.base_label = base_label
        self.head_commit = head_commit
        self.head_label = head_label
        self.iteration = iteration
        self.pull_request_url = pull_request_url
        self.cover_letter_message_id = cover_letter_message_id
        self.references_message_ids = references_message_ids
        self.latest_tag = latest_tag
        # the iteration before this one, needed to redo it
        self.previous_base_commit = previous_base_commit
        self.previous_head_commit = previous_head_commit
        self.extra = dict()

    def __repr__(self):
        return '<SeriesMetadata %s v%s>' % (self.pull_request_url or self.head_label, self.iteration)

    def to_dict(self) -> dict:
        data = dict(self.extra)
        for attr, jkey in self._jsonkeys.items():
            value = getattr(self, attr)
            if value is not None:
                data[jkey] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'SeriesMetadata':
        data = dict(data)
        kwargs = dict()
        for attr, jkey in cls._jsonkeys.items():
            if jkey in data:
                kwargs[attr] = data.pop(jkey)
        for required in ('base_commit', 'base_label', 'head_commit', 'head_label'):
            if required not in kwargs:
                raise RuntimeError('Stored series metadata lacks %s' % cls._jsonkeys[required])
        obj = cls(**kwargs)
        obj.extra = data
        return obj


class MailMetadata:
    _jsonkeys = {
        'message_id': 'messageID',
        'original_commit': 'originalCommit',
        'pull_request_url': 'pullRequestURL',
        'commit_in_upstream': 'commitInUpstream',
    }

    def __init__(self, message_id: str, original_commit: Optional[str] = None,
                 pull_request_url: Optional[str] = None, commit_in_upstream: Optional[str] = None):
        self.message_id = message_id
        self.original_commit = original_commit
        self.pull_request_url = pull_request_url
        self.commit_in_upstream = commit_in_upstream
        self.extra = dict()

    def to_dict(self) -> dict:
        data = dict(self.extra)
        for attr, jkey in self._jsonkeys.items():
            value = getattr(self, attr)
            if value is not None:
                data[jkey] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'MailMetadata':
        data = dict(data)
        kwargs = dict()
        for attr, jkey in cls._jsonkeys.items():
            if jkey in data:
                kwargs[attr] = data.pop(jkey)
        if 'message_id' not in kwargs:
            raise RuntimeError('Stored mail metadata lacks messageID')
        obj = cls(**kwargs)
        obj.extra = data
        return obj


class GitNotes:
    """JSON annotations stored in a git notes ref.

    Arbitrary string keys are mapped onto blob names with git hash-object,
    and the JSON value is the note attached to that blob.
    """

    def __init__(self, gitdir: Optional[str] = None, notes_ref: Optional[str] = None):
        self.gitdir = gitdir
        if notes_ref is None:
            config = prmail.get_main_config()
            notes_ref = config.get('notes-ref')
        self.notes_ref = notes_ref

    def _notes(self, args: List[str]) -> Tuple[int, str]:
        return prmail.git_run_command(self.gitdir, ['notes', f'--ref={self.notes_ref}'] + args, logstderr=True)

    def _key_to_obj(self, key: str) -> str:
        # Write the blob so the notes machinery can find it
        return prmail.git_checked_output(self.gitdir, ['hash-object', '-w', '--stdin'],
                                         stdin=f'{key}\n'.encode()).strip()

    def get_string(self, key: str) -> Optional[str]:
        ecode, out = prmail.git_run_command(self.gitdir, ['notes', f'--ref={self.notes_ref}', 'show',
                                                          self._key_to_obj(key)])
        if ecode > 0:
            return None
        return out

    def get(self, key: str) -> Optional[dict]:
        jdata = self.get_string(key)
        if jdata is None:
            return None
        return json.loads(jdata)

    def set(self, key: str, value: dict) -> None:
        logger.debug('Recording note for %s', key)
        jdata = json.dumps(value, sort_keys=True)
        ecode, out = self._notes(['add', '-f', '-m', jdata, self._key_to_obj(key)])
        if ecode > 0:
            raise RuntimeError('Could not record note for %s: %s' % (key, out.strip()))

    def append_commit_note(self, commit: str, note: str) -> None:
        ecode, out = self._notes(['append', '-m', note, commit])
        if ecode > 0:
            raise RuntimeError('Could not append note to %s: %s' % (commit, out.strip()))


class MemoryNotes:
    """Annotation store that keeps everything in a dict.

    There is nothing to push unless a notes_ref is given.
    """

    def __init__(self, notes: Optional[Dict[str, dict]] = None, notes_ref: Optional[str] = None):
        if notes is None:
            notes = dict()
        self.notes = notes
        self.notes_ref = notes_ref
        self.commit_notes = dict()

    def get(self, key: str) -> Optional[dict]:
        if key not in self.notes:
            return None
        return copy.deepcopy(self.notes[key])

    def set(self, key: str, value: dict) -> None:
        self.notes[key] = copy.deepcopy(value)

    def append_commit_note(self, commit: str, note: str) -> None:
        if commit not in self.commit_notes:
            self.commit_notes[commit] = list()
        self.commit_notes[commit].append(note)


def subject_prefix(iteration: int, noupdate: bool = False, rfc: bool = False) -> str:
    prefix = 'PREVIEW' if noupdate else 'PATCH'
    if rfc:
        prefix += '/RFC'
    if iteration > 1:
        prefix += f' v{iteration}'
    return prefix


def get_tag_name(metadata: SeriesMetadata, canonical_owner: Optional[str] = None) -> str:
    if not metadata.pull_request_url:
        return f'{metadata.head_label}-v{metadata.iteration}'
    owner, repo, prnum = prmail.forge.parse_pull_request_url(metadata.pull_request_url)
    branch = metadata.head_label.replace(':', '/')
    if owner == canonical_owner:
        tagprefix = 'pr-'
    else:
        tagprefix = f'pr-{owner}-'
    return f'{tagprefix}{prnum}/{branch}-v{metadata.iteration}'


class SeriesTracker:
    """Reads, advances and writes back the metadata of one series."""

    def __init__(self, notes, key: str, gitdir: Optional[str] = None):
        self.notes = notes
        self.key = key
        self.gitdir = gitdir
        self._snapshot = None

    def load(self) -> Optional[SeriesMetadata]:
        self._snapshot = self.notes.get(self.key)
        if self._snapshot is None:
            return None
        return SeriesMetadata.from_dict(self._snapshot)

    def start_iteration(self, base_label: str, base_commit: str, head_label: str, head_commit: str,
                        pull_request_url: Optional[str] = None,
                        noupdate: bool = False, redo: bool = False) -> Tuple[SeriesMetadata, str, int]:
        """Work out which iteration we are about to send.

        Returns the updated metadata, the range-diff against the previous
        iteration (empty for the first one) and the number of patches.

        With redo, the latest iteration is replaced instead of superseded:
        the iteration number and the references stay as they are.
        """
        current_range = f'{base_commit}..{head_commit}'
        patch_count = prmail.git_rev_list_count(self.gitdir, current_range)
        if not patch_count:
            raise RuntimeError('Invalid commit range: %s' % current_range)

        range_diff = ''
        metadata = self.load()
        if metadata is None:
            if redo:
                raise RuntimeError('Nothing to redo, %s was never submitted' % self.key)
            metadata = SeriesMetadata(base_commit, base_label, head_commit, head_label,
                                      pull_request_url=pull_request_url,
                                      cover_letter_message_id=prmail.NOT_YET_SENT)
            logger.debug('No prior submission of %s', self.key)
            return metadata, range_diff, patch_count

        # preview mode is allowed to reprint what was already submitted
        if not (noupdate or redo) and not prmail.git_rev_list(self.gitdir, f'{metadata.head_commit}...{head_commit}'):
            raise prmail.AlreadySubmittedError('%s was already submitted' % head_commit)

        if redo:
            previous_range = None
            if metadata.previous_head_commit:
                previous_range = f'{metadata.previous_base_commit}..{metadata.previous_head_commit}'
        else:
            previous_range = f'{metadata.base_commit}..{metadata.head_commit}'

        if not previous_range:
            logger.debug('No earlier iteration to compare v%s to', metadata.iteration)
        elif prmail.git_command_exists(self.gitdir, 'range-diff'):
            config = prmail.get_main_config()
            range_diff = prmail.git_range_diff(self.gitdir, previous_range, current_range,
                                               creation_factor=config.get('range-diff-creation-factor'))
        else:
            logger.info('Your git does not know range-diff, not generating one')

        if not redo:
            metadata.iteration += 1
            metadata.previous_base_commit = metadata.base_commit
            metadata.previous_head_commit = metadata.head_commit
            if metadata.cover_letter_message_id and metadata.cover_letter_message_id != prmail.NOT_YET_SENT:
                if metadata.references_message_ids is None:
                    metadata.references_message_ids = list()
                metadata.references_message_ids.append(metadata.cover_letter_message_id)
        metadata.base_commit = base_commit
        metadata.base_label = base_label
        metadata.head_commit = head_commit
        metadata.head_label = head_label
        metadata.cover_letter_message_id = prmail.NOT_YET_SENT
        logger.debug('Prior submission of %s found, this is v%s', self.key, metadata.iteration)

        return metadata, range_diff, patch_count

    def save(self, metadata: SeriesMetadata) -> None:
        stored = self.notes.get(self.key)
        if stored != self._snapshot:
            stored_iter = stored.get('iteration') if stored else None
            raise prmail.StaleMetadataError('Metadata for %s changed while we worked on it (now at v%s)'
                                            % (self.key, stored_iter))
        data = metadata.to_dict()
        self.notes.set(self.key, data)
        self._snapshot = data
