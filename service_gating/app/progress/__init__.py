"""
Progress Oracle package.

Read-only access to a user's enrollment, group membership, completion
status, course outline and quiz scores, over HTTP or in memory.
"""
