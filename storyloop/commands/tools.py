"""
storyloop tools - Show configured AI tools and whether they are installed.
"""

from pathlib import Path

from storyloop.lib.constants import EXIT_CONFIG_ERROR, EXIT_SUCCESS, LOOP_DIR_NAME
from storyloop.lib.settings import SettingsError, load_settings
from storyloop.lib.validate import ValidationError
from storyloop.runner.bridge import discover_tools
from storyloop.workflow.history import IterationHistoryStore


def cmd_tools(args, project_dir: Path) -> int:
    """Probe every configured tool."""
    try:
        settings = load_settings(project_dir)
    except SettingsError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG_ERROR

    selected = settings.ai_tool
    try:
        config = IterationHistoryStore(project_dir / LOOP_DIR_NAME).load_config()
    except ValidationError:
        config = None
    if config is not None:
        selected = config.ai_tool

    descriptors = discover_tools(settings.tools.values(), settings.timeouts.probe)

    print(f"{'':2}{'TOOL':<14} {'STATUS':<10} {'PARSER':<8} VERSION")
    for tool in descriptors:
        marker = "*" if tool.name == selected else " "
        status = "ok" if tool.available else "missing"
        print(f"{marker} {tool.name:<14} {status:<10} {tool.parser:<8} {tool.version or '-'}")
        if args.verbose:
            print(f"    {tool.command}")
            if tool.path:
                print(f"    {tool.path}")

    available = sum(1 for t in descriptors if t.available)
    print(f"\n{available}/{len(descriptors)} tool(s) available; * = selected")
    return EXIT_SUCCESS
