"""
Shared API dependencies
"""

from fastapi import Request

from ..engine import LendingSystem


def get_system(request: Request) -> LendingSystem:
    """The LendingSystem attached to the running app"""
    return request.app.state.system
