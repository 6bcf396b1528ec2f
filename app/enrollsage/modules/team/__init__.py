"""
School staff: invitations by email token and membership management.
"""
