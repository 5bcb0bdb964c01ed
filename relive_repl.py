import asyncio
import os
import sys
from typing import List, Optional

from relive.relive_config import configure_logging, load_config
from relive.relive_datatypes import UpdateResult
from relive.relive_modules import ModuleManager, ModuleRecord
from relive.relive_parser import Parser

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def print_side_effects(result: UpdateResult):
    for effect in result.side_effects:
        stream = sys.stderr if effect.get('topics') == ['stderr'] else sys.stdout
        print(effect.get('message', ''), file=stream)

def report_update(record: ModuleRecord, result: UpdateResult):
    """Notices for file loads and live updates."""
    if result.status == 'error':
        print_side_effects(result)
        if not result.side_effects:
            print(result.format_error(), file=sys.stderr)
        return
    if result.fragments_run:
        print(f"[relive] {record.path}: {result.fragments_run} fragment(s) applied")
    print_side_effects(result)

def switch_module(manager: ModuleManager, command: str, current: str) -> str:
    """Handles the `:` commands; returns the module to evaluate in next."""
    name, _, arg = command.partition(" ")
    paths = manager.get_module_paths()
    match name:
        case ":modules":
            for path in paths:
                marker = "*" if path == current else " "
                print(f"{marker} {path}")
            return current
        case ":module":
            record = manager.get(arg.strip()) if arg.strip() else None
            if record is None:
                print(f"No live module: {arg.strip()}", file=sys.stderr)
                return current
            return record.path
        case ":next" | ":prev":
            if current not in paths:
                return paths[0] if paths else current
            step = 1 if name == ":next" else -1
            target = paths[(paths.index(current) + step) % len(paths)]
            print(f"Now evaluating in {target}")
            return target
    print(f"Unknown command: {name}", file=sys.stderr)
    return current

async def main():
    """Load an entry file live when provided, then start the interactive REPL."""
    entry: Optional[str] = None
    if len(sys.argv) > 1 and not sys.argv[1].startswith("-"):
        entry = sys.argv[1]
        if not os.path.isfile(entry):
            print(f"Error: file not found: {entry}", file=sys.stderr)
            raise SystemExit(1)

    directory = os.path.dirname(os.path.abspath(entry)) if entry else os.getcwd()
    config = load_config(directory)
    configure_logging(config)
    manager = ModuleManager(config)
    manager.on_module_updated(report_update)

    print("relive REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    if entry:
        current = (await manager.load(entry, is_entry=True)).path
    else:
        current = manager.create_scratch().path

    parser = Parser()
    buffer: List[str] = []

    # REPL Loop
    while True:
        try:
            raw = await ainput("... " if buffer else ">> ")
            if raw == "":
                raise EOFError
            line = raw.rstrip("\n")

            if not buffer:
                stripped = line.strip()
                if not stripped:
                    continue
                if stripped == "exit":
                    break
                if stripped.startswith(":"):
                    current = switch_module(manager, stripped, current)
                    continue

            # A blank line closes an open block.
            if buffer and not line.strip():
                source = "\n".join(buffer) + "\n"
            else:
                buffer.append(line)
                source = "\n".join(buffer)
                if parser.is_incomplete(source):
                    continue
            buffer = []

            result = await manager.aeval_in_module(current, source)

            if result.status == 'error':
                print_side_effects(result)
                if not result.side_effects:
                    print(result.format_error(), file=sys.stderr)
                continue

            if result.value is not None:
                manager.get(current).namespace["_"] = result.value
                print(repr(result.value))

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            buffer = []

    await manager.close()

def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")

if __name__ == "__main__":
    run()
