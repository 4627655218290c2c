"""GraphQL schema and resolvers.

Exposed types:

* **Repository** / **User**: GitHub entities, fetched through the request's
  connector only when a client selects them
* **Entry**: a submitted repository with its score and comments
* **Comment**, **Vote**
* **Query**: ``feed``, ``entry``, ``currentUser``
* **Mutation**: ``submitRepository``, ``vote``, ``comment``

Field names match the GitHub API (``full_name``, ``html_url`` ...) and the
camelCase names used by existing clients (``postedBy``, ``commentCount``), so
the schema is built with ``auto_camelcase=False``.

Every resolver receives a :class:`~githunt.context.SessionContext` as
``info.context``.
"""
from functools import wraps

import graphene

from github_client import validate_full_name

from .errors import DuplicateEntry
from .services import encode_cursor


def _enum_value(value):
    return getattr(value, 'value', value)


def login_required(resolver):
    """Reject anonymous callers before the resolver touches any store."""
    @wraps(resolver)
    def wrapper(root, info, **kwargs):
        info.context.require_user()
        return resolver(root, info, **kwargs)
    return wrapper


class FeedType(graphene.Enum):
    """Sort order of the feed."""
    HOT = 'HOT'
    NEW = 'NEW'


class VoteType(graphene.Enum):
    UP = 'UP'
    DOWN = 'DOWN'
    CANCEL = 'CANCEL'


class RepositoryObject(graphene.ObjectType):
    class Meta:
        name = 'Repository'

    name = graphene.String(required=True)
    full_name = graphene.String(required=True)
    description = graphene.String()
    html_url = graphene.String(required=True)
    stargazers_count = graphene.Int(required=True)
    open_issues_count = graphene.Int()
    created_at = graphene.String(required=True)


class UserObject(graphene.ObjectType):
    class Meta:
        name = 'User'

    login = graphene.String(required=True)
    avatar_url = graphene.String(required=True)
    html_url = graphene.String(required=True)


class CommentObject(graphene.ObjectType):
    class Meta:
        name = 'Comment'

    posted_by = graphene.Field(UserObject, required=True, name='postedBy')
    created_at = graphene.String(required=True, name='createdAt')
    content = graphene.String(required=True)

    def resolve_posted_by(comment, info):
        return info.context.connector.get_user(comment['posted_by'])


class VoteObject(graphene.ObjectType):
    class Meta:
        name = 'Vote'

    vote_value = graphene.Int(required=True)


class EntryObject(graphene.ObjectType):
    class Meta:
        name = 'Entry'

    id = graphene.Int(required=True)
    repository = graphene.Field(RepositoryObject, required=True)
    posted_by = graphene.Field(UserObject, required=True, name='postedBy')
    created_at = graphene.String(required=True, name='createdAt')
    score = graphene.Int(required=True)
    comments = graphene.NonNull(graphene.List(CommentObject))
    comment_count = graphene.Int(required=True, name='commentCount')
    vote = graphene.Field(
        VoteObject, required=True,
        description="The current user's vote on this entry (0 when anonymous)",
    )
    cursor = graphene.String(
        required=True,
        description='Pass as feed(after:) to continue the feed after this entry',
    )

    def resolve_repository(entry, info):
        return info.context.connector.get_repository(entry['repository_full_name'])

    def resolve_posted_by(entry, info):
        return info.context.connector.get_user(entry['posted_by'])

    def resolve_comments(entry, info):
        return info.context.store.get_comments(entry['id'])

    def resolve_vote(entry, info):
        user = info.context.user
        value = info.context.store.get_vote(entry['id'], user.login) if user else 0
        return {'vote_value': value}

    def resolve_cursor(entry, info):
        return encode_cursor(entry)


class Query(graphene.ObjectType):
    feed = graphene.List(
        EntryObject,
        feed_type=graphene.Argument(FeedType, required=True, name='type'),
        after=graphene.String(),
        description='For the home page; pass the last cursor as after to get the next page',
    )
    entry = graphene.Field(
        EntryObject,
        repo_full_name=graphene.String(required=True, name='repoFullName'),
        description='For the entry page',
    )
    current_user = graphene.Field(
        UserObject, name='currentUser',
        description='The logged-in user, or null',
    )

    def resolve_feed(root, info, feed_type, after=None):
        return info.context.store.get_feed(_enum_value(feed_type), after=after)

    def resolve_entry(root, info, repo_full_name):
        return info.context.store.get_entry(validate_full_name(repo_full_name))

    def resolve_current_user(root, info):
        return info.context.user


class Mutation(graphene.ObjectType):
    submit_repository = graphene.Field(
        EntryObject, name='submitRepository',
        repo_full_name=graphene.String(required=True, name='repoFullName'),
        description='Submit a new repository',
    )
    vote = graphene.Field(
        EntryObject,
        repo_full_name=graphene.String(required=True, name='repoFullName'),
        vote_type=graphene.Argument(VoteType, required=True, name='type'),
        description='Vote on a repository',
    )
    comment = graphene.Field(
        EntryObject,
        repo_full_name=graphene.String(required=True, name='repoFullName'),
        content=graphene.String(required=True),
        description='Comment on a repository',
    )

    @login_required
    def resolve_submit_repository(root, info, repo_full_name):
        ctx = info.context
        full_name = validate_full_name(repo_full_name)
        existing = ctx.store.get_entry(full_name)
        if existing:
            # Checked before the remote lookup.
            raise DuplicateEntry(f'"{existing["repository_full_name"]}" has already been submitted.')
        repository = ctx.connector.get_repository(full_name)
        return ctx.store.create_entry(repository.full_name, ctx.user.login)

    @login_required
    def resolve_vote(root, info, repo_full_name, vote_type):
        ctx = info.context
        return ctx.store.apply_vote(validate_full_name(repo_full_name), ctx.user.login,
                                    _enum_value(vote_type))

    @login_required
    def resolve_comment(root, info, repo_full_name, content):
        ctx = info.context
        return ctx.store.add_comment(validate_full_name(repo_full_name), ctx.user.login,
                                     content)


def build_schema() -> graphene.Schema:
    """Build and return the GitHunt GraphQL schema."""
    return graphene.Schema(query=Query, mutation=Mutation, auto_camelcase=False)


schema = build_schema()


def print_schema() -> str:
    """Return the schema in GraphQL SDL."""
    return str(schema)
