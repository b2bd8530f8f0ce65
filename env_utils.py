import os

_TRUTHY = {'1', 'true', 'yes', 'on'}


def parse_bool_env(name, default='0'):
    """Return True when the environment variable is 1/true/yes/on, ignoring case and trailing semicolons."""
    value = os.environ.get(name)
    if value is None:
        value = default
    value = value.strip().rstrip(';').strip().lower()
    return value in _TRUTHY


def read_debug_flags(flag_names):
    """Map each key of flag_names to the boolean value of its environment variable."""
    return {key: parse_bool_env(env_name) for key, env_name in flag_names.items()}
