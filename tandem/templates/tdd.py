"""Test-driven development team."""


def CODER(spec_or_issue: str) -> str:
    return f"""You are implementing this specification or issue:

{spec_or_issue}

Use test-driven development:
1. Write comprehensive tests first and watch them fail
2. Implement the minimal code that makes them pass
3. Refactor for clarity while keeping the suite green

Finish with a short summary of what you built and the exact commands that run the tests.
"""


def REVIEWER(spec_or_issue: str) -> str:
    return f"""You are reviewing a coder's test-driven implementation of:

{spec_or_issue}

Review process:
1. Find the test framework and run the full suite using the coder's instructions
2. Check that every requirement has a test that would fail without the implementation
3. Verify the implementation meets the original requirements
4. Assess code quality and maintainability
"""
