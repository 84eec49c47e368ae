"""Password reset relay.

This package watches the directory an identity service drops password reset
files into, validates each reset and dispatches a notification to the user.
Administrators can also generate resets in-process without any file.
"""

__version__ = "0.1.0"
