#!/usr/bin/env python3
"""
GraphQL schema tests: feed, entry, currentUser, submitRepository, vote and
comment, executed directly against githunt.schema with a demo connector and
an in-memory database. Concurrency cases use a temporary database file.

Run with:
    python -m pytest tests/test_schema.py
"""
import os
import shutil
import sys
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from github_client import DemoGitHubConnector
from githunt.context import SessionContext
from githunt.entities import Repository, User
from githunt.errors import RemoteUnavailable, format_error
from githunt.schema import print_schema, schema
from githunt.services import EngagementStore

ALICE = User('alice', 'https://avatars.githubusercontent.com/alice', 'https://github.com/alice')
BOB = User('bob', 'https://avatars.githubusercontent.com/bob', 'https://github.com/bob')

SUBMIT = '''
mutation Submit($name: String!) {
  submitRepository(repoFullName: $name) {
    score commentCount postedBy { login } repository { full_name stargazers_count }
  }
}
'''
VOTE = '''
mutation Vote($name: String!, $type: VoteType!) {
  vote(repoFullName: $name, type: $type) { score vote { vote_value } }
}
'''
COMMENT = '''
mutation Comment($name: String!, $content: String!) {
  comment(repoFullName: $name, content: $content) {
    commentCount comments { content postedBy { login } createdAt }
  }
}
'''


class SchemaTestCase(unittest.TestCase):
    """Runs operations as a given user with fresh per-request handles."""

    def setUp(self):
        self.engine = database.make_engine('sqlite://')
        database.init_db(self.engine)
        self.Session = database.make_session_factory(self.engine)
        self.last_connector = None

    def tearDown(self):
        self.engine.dispose()

    def execute(self, query, user=None, connector=None, **variables):
        self.last_connector = connector or DemoGitHubConnector()
        ctx = SessionContext(user=user, connector=self.last_connector,
                             store=EngagementStore(self.Session()))
        try:
            return schema.execute(query, variable_values=variables, context_value=ctx)
        finally:
            ctx.close()

    def kinds(self, result):
        return [format_error(e)['extensions']['kind'] for e in result.errors or []]

    def submit(self, name='octocat/Hello-World', user=ALICE):
        return self.execute(SUBMIT, user=user, name=name)


# ===========================================================================
# Worked flow
# ===========================================================================

class TestEngagementFlow(SchemaTestCase):

    def test_submit_vote_comment(self):
        result = self.submit()
        self.assertIsNone(result.errors)
        entry = result.data['submitRepository']
        self.assertEqual(entry['score'], 0)
        self.assertEqual(entry['commentCount'], 0)
        self.assertEqual(entry['postedBy']['login'], 'alice')
        self.assertEqual(entry['repository']['full_name'], 'octocat/Hello-World')

        name = 'octocat/Hello-World'
        result = self.execute(VOTE, user=ALICE, name=name, type='UP')
        self.assertEqual(result.data['vote'], {'score': 1, 'vote': {'vote_value': 1}})
        result = self.execute(VOTE, user=BOB, name=name, type='UP')
        self.assertEqual(result.data['vote']['score'], 2)
        result = self.execute(VOTE, user=ALICE, name=name, type='CANCEL')
        self.assertEqual(result.data['vote'], {'score': 1, 'vote': {'vote_value': 0}})

        result = self.execute(COMMENT, user=ALICE, name=name, content='nice')
        self.assertIsNone(result.errors)
        comment = result.data['comment']
        self.assertEqual(comment['commentCount'], 1)
        self.assertEqual(comment['comments'][0]['content'], 'nice')
        self.assertEqual(comment['comments'][0]['postedBy']['login'], 'alice')

    def test_hot_feed_ranks_by_score(self):
        for name in ('octocat/Hello-World', 'octocat/Spoon-Knife', 'graphql/graphql-js'):
            self.submit(name)
        self.execute(VOTE, user=ALICE, name='octocat/Spoon-Knife', type='UP')
        self.execute(VOTE, user=BOB, name='octocat/Spoon-Knife', type='UP')
        self.execute(VOTE, user=ALICE, name='graphql/graphql-js', type='DOWN')

        result = self.execute('{ feed(type: HOT) { score repository { full_name } } }')
        self.assertIsNone(result.errors)
        self.assertEqual(
            [(e['repository']['full_name'], e['score']) for e in result.data['feed']],
            [('octocat/Spoon-Knife', 2), ('octocat/Hello-World', 0), ('graphql/graphql-js', -1)],
        )

    def test_feed_pages_with_cursor(self):
        for name in ('octocat/Hello-World', 'octocat/Spoon-Knife', 'graphql/graphql-js'):
            self.submit(name)
        first = self.execute('{ feed(type: NEW) { id cursor } }').data['feed']
        self.assertEqual(len(first), 3)
        rest = self.execute(
            'query Next($after: String) { feed(type: NEW, after: $after) { id } }',
            after=first[0]['cursor'],
        ).data['feed']
        self.assertEqual([e['id'] for e in rest], [e['id'] for e in first[1:]])

    def test_entry_query(self):
        self.submit()
        result = self.execute(
            '{ entry(repoFullName: "octocat/hello-world") { score createdAt repository { name } } }')
        self.assertIsNone(result.errors)
        self.assertEqual(result.data['entry']['repository']['name'], 'Hello-World')
        self.assertTrue(result.data['entry']['createdAt'])

    def test_entry_missing_is_null(self):
        result = self.execute('{ entry(repoFullName: "octocat/Hello-World") { score } }')
        self.assertIsNone(result.errors)
        self.assertIsNone(result.data['entry'])

    def test_vote_field_for_anonymous_is_zero(self):
        self.submit()
        self.execute(VOTE, user=ALICE, name='octocat/Hello-World', type='UP')
        result = self.execute('{ feed(type: HOT) { vote { vote_value } } }')
        self.assertEqual(result.data['feed'][0]['vote']['vote_value'], 0)


# ===========================================================================
# Current user
# ===========================================================================

class TestCurrentUser(SchemaTestCase):

    def test_anonymous(self):
        result = self.execute('{ currentUser { login } }')
        self.assertIsNone(result.errors)
        self.assertIsNone(result.data['currentUser'])

    def test_logged_in(self):
        result = self.execute('{ currentUser { login avatar_url html_url } }', user=ALICE)
        self.assertEqual(result.data['currentUser']['login'], 'alice')
        self.assertEqual(self.last_connector.request_count, 0)


# ===========================================================================
# Lazy resolution and deduplication
# ===========================================================================

class TestRemoteLookups(SchemaTestCase):

    def test_unselected_repository_not_fetched(self):
        self.submit()
        result = self.execute('{ feed(type: NEW) { score commentCount createdAt } }')
        self.assertIsNone(result.errors)
        self.assertEqual(self.last_connector.request_count, 0)

    def test_same_user_fetched_once(self):
        self.submit('octocat/Hello-World')
        self.submit('octocat/Spoon-Knife')
        result = self.execute(
            '{ feed(type: NEW) { repository { name } postedBy { login } } }')
        self.assertIsNone(result.errors)
        self.assertEqual(len(result.data['feed']), 2)
        self.assertEqual(self.last_connector.request_count, 3)

    def test_remote_failure_nulls_only_that_entry(self):
        self.submit('octocat/Hello-World')
        self.submit('octocat/Spoon-Knife')
        connector = MagicMock()

        def get_repository(full_name):
            if full_name == 'octocat/Spoon-Knife':
                raise RemoteUnavailable('GitHub is unavailable right now.')
            return Repository('Hello-World', full_name, None,
                              'https://github.com/octocat/Hello-World', 1, 0,
                              '2011-01-26T19:01:12Z')

        connector.get_repository.side_effect = get_repository
        result = self.execute('{ feed(type: NEW) { score repository { full_name } } }',
                              connector=connector)
        self.assertEqual(self.kinds(result), ['REMOTE_UNAVAILABLE'])
        feed = result.data['feed']
        self.assertIsNone(feed[0])
        self.assertEqual(feed[1]['repository']['full_name'], 'octocat/Hello-World')


class TestSlowRemoteLookup(unittest.TestCase):
    """A resolver waiting on GitHub must not keep other requests' writes waiting."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.engine = database.make_engine(f"sqlite:///{os.path.join(self.tmp, 'githunt.db')}")
        database.init_db(self.engine)
        self.Session = database.make_session_factory(self.engine)
        store = EngagementStore(self.Session())
        store.create_entry('octocat/Hello-World', 'alice')
        store.close()

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _vote_elsewhere(self, login):
        finished = threading.Event()

        def vote():
            store = EngagementStore(self.Session())
            try:
                store.apply_vote('octocat/Hello-World', login, 'UP')
                finished.set()
            finally:
                store.close()

        thread = threading.Thread(target=vote)
        thread.start()
        thread.join(5)
        return finished.is_set()

    def test_vote_lands_while_feed_waits_on_github(self):
        votes_landed = []

        def get_repository(full_name):
            votes_landed.append(self._vote_elsewhere('bob'))
            return Repository('Hello-World', full_name, None,
                              'https://github.com/octocat/Hello-World', 1, 0,
                              '2011-01-26T19:01:12Z')

        connector = MagicMock()
        connector.get_repository.side_effect = get_repository
        ctx = SessionContext(user=None, connector=connector,
                             store=EngagementStore(self.Session()))
        try:
            result = schema.execute(
                '{ feed(type: HOT) { score comments { content } repository { name } } }',
                context_value=ctx)
        finally:
            ctx.close()
        self.assertIsNone(result.errors)
        self.assertEqual(votes_landed, [True])

    def test_vote_lands_while_submit_waits_on_github(self):
        votes_landed = []

        def get_repository(full_name):
            votes_landed.append(self._vote_elsewhere('carol'))
            return Repository('Spoon-Knife', full_name, None,
                              'https://github.com/octocat/Spoon-Knife', 1, 0,
                              '2011-01-27T19:30:43Z')

        connector = MagicMock()
        connector.get_repository.side_effect = get_repository
        connector.get_user.return_value = ALICE
        ctx = SessionContext(user=ALICE, connector=connector,
                             store=EngagementStore(self.Session()))
        try:
            result = schema.execute(SUBMIT, variable_values={'name': 'octocat/Spoon-Knife'},
                                    context_value=ctx)
        finally:
            ctx.close()
        self.assertEqual(votes_landed, [True])
        self.assertIsNone(result.errors)


# ===========================================================================
# Mutation errors
# ===========================================================================

class TestMutationErrors(SchemaTestCase):

    def test_anonymous_mutations_rejected(self):
        self.submit()
        cases = [
            (SUBMIT, {'name': 'octocat/Spoon-Knife'}),
            (VOTE, {'name': 'octocat/Hello-World', 'type': 'UP'}),
            (COMMENT, {'name': 'octocat/Hello-World', 'content': 'hi'}),
        ]
        for query, variables in cases:
            with self.subTest(query=query.split('(')[0].strip()):
                result = self.execute(query, **variables)
                self.assertEqual(self.kinds(result), ['UNAUTHENTICATED'])

        entry = self.execute(
            '{ entry(repoFullName: "octocat/Hello-World") { score commentCount } }').data['entry']
        self.assertEqual(entry, {'score': 0, 'commentCount': 0})
        self.assertIsNone(self.execute(
            '{ entry(repoFullName: "octocat/Spoon-Knife") { score } }').data['entry'])

    def test_submit_unknown_repository(self):
        result = self.submit('octocat/does-not-exist')
        self.assertEqual(self.kinds(result), ['NOT_FOUND'])
        self.assertEqual(self.execute('{ feed(type: NEW) { id } }').data['feed'], [])

    def test_submit_duplicate(self):
        self.submit()
        result = self.submit(user=BOB)
        self.assertEqual(self.kinds(result), ['DUPLICATE_ENTRY'])
        self.assertEqual(self.last_connector.request_count, 0)

    def test_submit_malformed_name(self):
        result = self.submit('not a repo')
        self.assertEqual(self.kinds(result), ['VALIDATION_ERROR'])
        self.assertEqual(self.last_connector.request_count, 0)

    def test_vote_unknown_entry(self):
        result = self.execute(VOTE, user=ALICE, name='octocat/Hello-World', type='UP')
        self.assertEqual(self.kinds(result), ['NOT_FOUND'])

    def test_empty_comment(self):
        self.submit()
        result = self.execute(COMMENT, user=ALICE, name='octocat/Hello-World', content='   ')
        self.assertEqual(self.kinds(result), ['VALIDATION_ERROR'])

    def test_invalid_cursor(self):
        result = self.execute('{ feed(type: HOT, after: "nonsense") { id } }')
        self.assertEqual(self.kinds(result), ['VALIDATION_ERROR'])

    def test_invalid_enum_is_graphql_error(self):
        result = self.execute('{ feed(type: TOP) { id } }')
        self.assertEqual(self.kinds(result), ['GRAPHQL_ERROR'])

    def test_unexpected_error_is_hidden(self):
        connector = MagicMock()
        connector.get_user.side_effect = KeyError('secret detail')
        self.submit()
        result = self.execute('{ feed(type: NEW) { postedBy { login } } }', connector=connector)
        formatted = format_error(result.errors[0])
        self.assertEqual(formatted['extensions']['kind'], 'INTERNAL_ERROR')
        self.assertEqual(formatted['message'], 'Internal server error.')


class TestPrintSchema(unittest.TestCase):

    def test_sdl_names(self):
        sdl = print_schema()
        for name in ('type Query', 'type Mutation', 'type Entry', 'type Repository',
                     'submitRepository(repoFullName: String!): Entry',
                     'feed(type: FeedType!, after: String): [Entry]',
                     'currentUser: User', 'commentCount: Int!', 'stargazers_count: Int!',
                     'enum VoteType'):
            with self.subTest(name=name):
                self.assertIn(name, sdl)


if __name__ == '__main__':
    unittest.main()
