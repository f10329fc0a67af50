"""GitHub API client wrapper"""
import logging
from typing import Any, Optional

from githubkit import GitHub
from githubkit.exception import GitHubException, RequestFailed

from issue_relay.services.exceptions import RemoteAPIError

logger = logging.getLogger(__name__)

DELETE_ISSUE_MUTATION = """
mutation($input: DeleteIssueInput!) {
  deleteIssue(input: $input) {
    clientMutationId
  }
}
"""


class GitHubClient:
    """Wrapper for the issue operations the relay performs as one installation"""

    def __init__(self, gh: GitHub, installation_id: Optional[int] = None):
        """Wrap an authenticated githubkit client"""
        self.gh = gh
        self.installation_id = installation_id

    @staticmethod
    def _call(description: str, fn):
        """Run a githubkit call, surfacing failures as RemoteAPIError."""
        try:
            return fn()
        except RequestFailed as e:
            status = e.response.status_code
            logger.error(f"Failed to {description}: HTTP {status}")
            raise RemoteAPIError(f"Failed to {description}: HTTP {status}", status_code=status) from e
        except GitHubException as e:
            logger.error(f"Failed to {description}: {e}")
            raise RemoteAPIError(f"Failed to {description}: {e}") from e

    @staticmethod
    def _omit_none(**kwargs: Any) -> dict:
        return {k: v for k, v in kwargs.items() if v is not None}

    def create_issue(self, owner: str, repo: str, title: str, body: str) -> Any:
        """Create a new issue"""
        issue = self._call(
            f"create issue in {owner}/{repo}",
            lambda: self.gh.rest.issues.create(owner, repo, title=title, body=body).parsed_data,
        )
        logger.info(f"Created issue {owner}/{repo}#{issue.number}")
        return issue

    def update_issue(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Any:
        """Update an existing issue; only the given fields are sent"""
        params = self._omit_none(title=title, body=body, state=state)
        issue = self._call(
            f"update issue {owner}/{repo}#{issue_number}",
            lambda: self.gh.rest.issues.update(owner, repo, issue_number, **params).parsed_data,
        )
        logger.info(f"Updated issue {owner}/{repo}#{issue_number} ({', '.join(sorted(params))})")
        return issue

    def get_issue_node_id(self, owner: str, repo: str, issue_number: int) -> str:
        """Durable GraphQL identity of an issue, required to delete it"""
        issue = self._call(
            f"get issue {owner}/{repo}#{issue_number}",
            lambda: self.gh.rest.issues.get(owner, repo, issue_number).parsed_data,
        )
        return issue.node_id

    def delete_issue(self, node_id: str):
        """Delete an issue (GraphQL only; REST has no issue deletion)"""
        self._call(
            f"delete issue {node_id}",
            lambda: self.gh.graphql.request(
                DELETE_ISSUE_MUTATION, variables={"input": {"issueId": node_id}}
            ),
        )
        logger.info(f"Deleted issue {node_id}")

    def create_comment(self, owner: str, repo: str, issue_number: int, body: str) -> Any:
        """Create a comment on an issue"""
        comment = self._call(
            f"create comment on {owner}/{repo}#{issue_number}",
            lambda: self.gh.rest.issues.create_comment(
                owner, repo, issue_number, body=body
            ).parsed_data,
        )
        logger.info(f"Created comment {comment.id} on {owner}/{repo}#{issue_number}")
        return comment

    def update_comment(self, owner: str, repo: str, comment_id: int, body: str) -> Any:
        """Replace the body of a comment"""
        comment = self._call(
            f"update comment {comment_id} in {owner}/{repo}",
            lambda: self.gh.rest.issues.update_comment(owner, repo, comment_id, body=body).parsed_data,
        )
        logger.info(f"Updated comment {comment_id} in {owner}/{repo}")
        return comment

    def delete_comment(self, owner: str, repo: str, comment_id: int):
        """Delete a comment"""
        self._call(
            f"delete comment {comment_id} in {owner}/{repo}",
            lambda: self.gh.rest.issues.delete_comment(owner, repo, comment_id),
        )
        logger.info(f"Deleted comment {comment_id} in {owner}/{repo}")
