"""
Family portal for guardians with portal access.
"""
