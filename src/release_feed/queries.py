"""GitHub GraphQL 쿼리 문자열."""

from __future__ import annotations

_RATE_LIMIT_FIELDS = "rateLimit { cost limit remaining resetAt used }"


def release_fields(*, with_details: bool) -> str:
    """ReleaseFields 프래그먼트. with_details면 descriptionHTML 포함."""
    description = "descriptionHTML" if with_details else ""
    return f"""
    fragment ReleaseFields on Release {{
      id
      isDraft
      isPrerelease
      name
      tagName
      publishedAt
      updatedAt
      url
      {description}
    }}
    """


def _repository_body(releases_args: str) -> str:
    return f"""
      id
      name
      url
      description
      primaryLanguage {{ id name }}
      owner {{ login avatarUrl url }}
      stargazerCount
      languages(first: 5, orderBy: {{field: SIZE, direction: DESC}}) {{
        totalCount
        edges {{ node {{ id name }} }}
      }}
      licenseInfo {{ spdxId }}
      releases({releases_args}) {{
        totalCount
        pageInfo {{ hasNextPage endCursor }}
        edges {{ node {{ ...ReleaseFields }} }}
      }}
    """


def build_releases_query(*, with_details: bool, releases_per_repo: int) -> str:
    """별 목록 + 저장소별 최근 릴리스 N개를 한 번에 조회하는 쿼리."""
    repository = _repository_body(
        f"first: {releases_per_repo}, orderBy: {{field: CREATED_AT, direction: DESC}}"
    )
    return f"""
    {release_fields(with_details=with_details)}
    fragment RepositoryFields on Repository {{
      {repository}
    }}
    query($cursor: String, $pageSize: Int!) {{
      viewer {{
        starredRepositories(
          first: $pageSize,
          after: $cursor,
          orderBy: {{field: STARRED_AT, direction: DESC}}
        ) {{
          pageInfo {{ endCursor hasNextPage }}
          edges {{ node {{ ...RepositoryFields }} }}
        }}
      }}
      {_RATE_LIMIT_FIELDS}
    }}
    """


STARRED_REPOS_QUERY = f"""
query($cursor: String, $pageSize: Int!) {{
  viewer {{
    starredRepositories(
      first: $pageSize,
      after: $cursor,
      orderBy: {{field: STARRED_AT, direction: DESC}}
    ) {{
      totalCount
      pageInfo {{ endCursor hasNextPage }}
      edges {{
        starredAt
        node {{
          id
          name
          url
          stargazerCount
          primaryLanguage {{ id name }}
          languages(first: 5) {{ edges {{ node {{ id name }} }} }}
          licenseInfo {{ spdxId }}
          owner {{ login avatarUrl }}
        }}
      }}
    }}
  }}
  {_RATE_LIMIT_FIELDS}
}}
"""


def build_repo_releases_query(*, with_details: bool) -> str:
    """단일 저장소(node id)의 릴리스 페이지 쿼리."""
    repository = _repository_body(
        "first: $first, after: $cursor, orderBy: {field: CREATED_AT, direction: DESC}"
    )
    return f"""
    {release_fields(with_details=with_details)}
    query($repoId: ID!, $first: Int!, $cursor: String) {{
      node(id: $repoId) {{
        ... on Repository {{
          {repository}
        }}
      }}
      {_RATE_LIMIT_FIELDS}
    }}
    """


RELEASE_DETAILS_QUERY = f"""
query($ids: [ID!]!) {{
  nodes(ids: $ids) {{
    ... on Release {{ id descriptionHTML }}
  }}
  {_RATE_LIMIT_FIELDS}
}}
"""
