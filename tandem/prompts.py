"""Prompt composition for the coder and reviewer roles."""

from typing import Optional

from tandem.models import INCOMPLETE_RESPONSE_PLACEHOLDER, AgentResult
from tandem.teams import Team

FEEDBACK_SECTION = """
<review_feedback>
A reviewer rejected the previous attempt. Address every point below before
doing anything else, without breaking what already works:

{feedback}
</review_feedback>
"""

CODER_PROTOCOL = """
<workflow>
You are working in an isolated git worktree on branch '{branch}'.
Commit your work to this branch when you are done. Do not open a pull request;
the reviewer decides whether the work is ready.
</workflow>
"""

HANDOFF_SECTION = """
<coder_handoff>
{handoff}
</coder_handoff>
"""

REVIEWER_PROTOCOL = """
<decision>
You are working in the coder's git worktree on branch '{branch}'.
End your review with exactly one of these outcomes:
- Approve: push the branch and open a pull request for it with `gh pr create`,
  with a description of the change and how it was verified.
- Request changes: do NOT open a pull request. Reply with specific, actionable
  feedback; it is passed to the coder verbatim for the next attempt.
An open pull request for this branch is the only signal of approval.
</decision>
"""


def compose_coder_prompt(team: Team, spec: str, branch: str, feedback: Optional[str] = None) -> str:
    """Team coder prompt, followed by the latest review feedback when there is one."""
    prompt = team.coder(spec).rstrip() + "\n" + CODER_PROTOCOL.format(branch=branch)
    if feedback:
        prompt += FEEDBACK_SECTION.format(feedback=feedback.strip())
    return prompt


def compose_reviewer_prompt(team: Team, spec: str, branch: str, handoff: str) -> str:
    """Team reviewer prompt, followed by the coder's handoff and the decision protocol."""
    return (
        team.reviewer(spec).rstrip()
        + "\n"
        + HANDOFF_SECTION.format(handoff=handoff.strip())
        + REVIEWER_PROTOCOL.format(branch=branch)
    )


def extract_handoff(result: AgentResult) -> str:
    text = result.final_response.strip()
    return text or INCOMPLETE_RESPONSE_PLACEHOLDER
