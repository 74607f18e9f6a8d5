import json
import os

CONFIG_PATH = os.path.expanduser("~/.keyshell_config")

DEFAULT_CONFIG = {
    "line_editor": "auto",
    "history_file": "~/.keyshell_history",
    "confirm_delete_item": True,
    "show_notifications": True,
}

LINE_EDITORS = ("auto", "prompt_toolkit", "simple")


def get_config(path=None):
    """Loads the configuration, creating it with defaults if it does not exist."""
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        default_config = dict(DEFAULT_CONFIG)
        with open(path, "w") as f:
            json.dump(default_config, f, indent=4)
        print(f"[*] Config file created at {path}")
        return default_config

    with open(path, "r") as f:
        config = json.load(f)

    # Keys added after the file was written
    repaired = False
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = value
            repaired = True

    if config["line_editor"] not in LINE_EDITORS:
        print(
            f"[!] Warning: unknown line_editor '{config['line_editor']}', using 'auto'."
        )
        config["line_editor"] = "auto"
        repaired = True

    if repaired:
        save_config(config, path)
    return config


def save_config(config, path=None):
    with open(path or CONFIG_PATH, "w") as f:
        json.dump(config, f, indent=4)
