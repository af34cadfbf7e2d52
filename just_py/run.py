import argparse
import logging
import os
import stat
import subprocess
import sys
import tempfile
from importlib.metadata import PackageNotFoundError, version
from typing import Iterator, List, Optional, Sequence, Set, Tuple

from .errors import (
    Code,
    Error,
    IoError,
    RunError,
    Signal,
    TmpdirIoError,
    UnknownRecipes,
)
from .parse import Justfile, Recipe, dump, parse

########################################################################################
# Global Variables and Types                                                           #
########################################################################################


try:
    __version__ = version("just-py")
except PackageNotFoundError:
    __version__ = "unknown"

JUSTFILE_NAMES = ["justfile", ".justfile", "Justfile", ".Justfile"]

# -u makes references to unset variables fail the line
DEFAULT_SHELL = ["sh", "-cu"]

EXIT_FAILURE = 255


########################################################################################
# Process Execution                                                                    #
########################################################################################


class Executor:
    """
    Spawns the processes that recipe bodies run in. Every process inherits the
    working directory of this one unless `working_directory` is given.
    """

    def __init__(
        self,
        shell: Optional[List[str]] = None,
        working_directory: Optional[str] = None,
    ) -> None:
        self.shell = shell if shell is not None else list(DEFAULT_SHELL)
        self.working_directory = working_directory

    def run_command(self, command: str) -> int:
        logging.debug(f"Running `{command}` with {' '.join(self.shell)}")
        return subprocess.run(
            [*self.shell, command], cwd=self.working_directory
        ).returncode

    def run_script(self, path: str) -> int:
        logging.debug(f"Running script {path}")
        return subprocess.run([path], cwd=self.working_directory).returncode


def check_status(recipe: Recipe, status: int) -> None:
    if status < 0:
        raise RunError(Signal(recipe=recipe.name, signal=-status))
    if status != 0:
        raise RunError(Code(recipe=recipe.name, code=status))


def run_shebang(recipe: Recipe, executor: Executor) -> None:
    """
    Write the whole body, shebang line included, to an executable file and run
    it. The interpreter named by the shebang decides what a failing command
    inside the script means; only the script's own exit status is checked.
    """
    try:
        tmpdir = tempfile.TemporaryDirectory(prefix="just")
    except OSError as e:
        raise RunError(TmpdirIoError(recipe=recipe.name, error=e)) from e

    with tmpdir as directory:
        path = os.path.join(directory, recipe.name)
        try:
            with open(path, "w") as f:
                f.write("\n".join(recipe.lines) + "\n")
            os.chmod(path, os.stat(path).st_mode | stat.S_IEXEC)
        except OSError as e:
            raise RunError(TmpdirIoError(recipe=recipe.name, error=e)) from e

        try:
            status = executor.run_script(path)
        except OSError as e:
            raise RunError(IoError(recipe=recipe.name, error=e)) from e

    check_status(recipe, status)


def run_lines(recipe: Recipe, executor: Executor) -> None:
    for line in recipe.lines:
        if line.startswith("@"):
            command = line[1:]
        else:
            command = line
            print(command, file=sys.stderr, flush=True)

        try:
            status = executor.run_command(command)
        except OSError as e:
            raise RunError(IoError(recipe=recipe.name, error=e)) from e
        check_status(recipe, status)


def run_recipe(recipe: Recipe, executor: Executor) -> None:
    logging.info(f"Running recipe {recipe.name}")
    if recipe.shebang:
        run_shebang(recipe, executor)
    else:
        run_lines(recipe, executor)


########################################################################################
# Scheduling                                                                           #
########################################################################################


def schedule(justfile: Justfile, names: Sequence[str]) -> List[Recipe]:
    """
    Order the requested recipes so that every recipe comes after its
    dependencies, visiting requests and dependencies in the order they were
    written. A recipe reachable along several paths is scheduled once.

    Names must already be known to be in the justfile, and the parser has
    already ruled out cycles.
    """
    scheduled: List[Recipe] = []
    seen: Set[str] = set()
    for name in names:
        if name in seen:
            continue
        seen.add(name)
        requested = justfile.recipes[name]
        stack: List[Tuple[Recipe, Iterator[str]]] = [
            (requested, iter(requested.dependencies))
        ]
        while stack:
            recipe, pending = stack[-1]
            dependency = next(pending, None)
            if dependency is None:
                stack.pop()
                scheduled.append(recipe)
            elif dependency not in seen:
                seen.add(dependency)
                dependent = justfile.recipes[dependency]
                stack.append((dependent, iter(dependent.dependencies)))
    return scheduled


def run(
    justfile: Justfile, names: Sequence[str], executor: Optional[Executor] = None
) -> None:
    missing = [name for name in names if name not in justfile.recipes]
    if missing:
        raise RunError(UnknownRecipes(recipes=missing))

    if executor is None:
        executor = Executor()
    for recipe in schedule(justfile, names):
        run_recipe(recipe, executor)


########################################################################################
# Main Function                                                                        #
########################################################################################


def find_justfile(directory: str) -> Optional[str]:
    directory = os.path.abspath(directory)
    while True:
        for filename in JUSTFILE_NAMES:
            candidate = os.path.join(directory, filename)
            if os.path.isfile(candidate):
                return candidate
        parent = os.path.dirname(directory)
        if parent == directory:
            return None
        directory = parent


def exit_status(error: RunError) -> int:
    if isinstance(error.kind, Code):
        return error.kind.code
    if isinstance(error.kind, Signal):
        return 128 + error.kind.signal
    return EXIT_FAILURE


def main(
    justfile_path: Optional[str],
    recipes: Sequence[str],
    working_directory: Optional[str] = None,
    list_recipes: bool = False,
    show: Optional[str] = None,
    dump_json: bool = False,
) -> int:
    if justfile_path is None:
        justfile_path = find_justfile(os.getcwd())
        if justfile_path is None:
            print("error: No justfile found", file=sys.stderr)
            return EXIT_FAILURE

    if justfile_path == "-":
        justfile_data = sys.stdin.read()
    else:
        try:
            with open(justfile_path) as f:
                justfile_data = f.read()
        except OSError as e:
            print(f"error: Failed to read justfile: {e}", file=sys.stderr)
            return EXIT_FAILURE
        if working_directory is None:
            working_directory = os.path.dirname(os.path.abspath(justfile_path))

    try:
        justfile = parse(justfile_data)
    except Error as e:
        print(e, file=sys.stderr)
        return EXIT_FAILURE

    if list_recipes:
        print(" ".join(justfile.recipes))
        return 0

    if show is not None:
        if show not in justfile.recipes:
            print(RunError(UnknownRecipes(recipes=[show])), file=sys.stderr)
            return EXIT_FAILURE
        print(justfile.recipes[show])
        return 0

    if dump_json:
        print(dump(justfile))
        return 0

    if not recipes:
        first = justfile.first()
        if first is None:
            print("error: Justfile contains no recipes", file=sys.stderr)
            return EXIT_FAILURE
        recipes = [first.name]

    try:
        run(justfile, recipes, Executor(working_directory=working_directory))
    except RunError as e:
        print(e, file=sys.stderr)
        return exit_status(e)
    return 0


def cli_entrypoint(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run recipes from a justfile")
    parser.add_argument(
        "recipes", nargs="*", help="Recipes to run (default: the first recipe)"
    )
    parser.add_argument(
        "-f", "--justfile", action="store", help="Justfile path, or - for stdin"
    )
    parser.add_argument(
        "-d",
        "--working-directory",
        action="store",
        help="Directory to run recipes in (default: the justfile's directory)",
    )
    parser.add_argument(
        "-l", "--list", action="store_true", help="List recipes in definition order"
    )
    parser.add_argument(
        "-s", "--show", action="store", metavar="RECIPE", help="Print a recipe"
    )
    parser.add_argument(
        "--dump", action="store_true", help="Print the parsed justfile as JSON"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose logging output"
    )
    parser.add_argument("--version", action="store_true", help="Print version string")
    parsed_args = parser.parse_args(argv)

    if parsed_args.version:
        print(f"just.py  Justfile command runner (version {__version__})")
        return

    logging.basicConfig(
        format="%(levelname)s: %(message)s",
        level=logging.DEBUG if parsed_args.verbose else logging.WARNING,
    )

    sys.exit(
        main(
            parsed_args.justfile,
            parsed_args.recipes,
            working_directory=parsed_args.working_directory,
            list_recipes=parsed_args.list,
            show=parsed_args.show,
            dump_json=parsed_args.dump,
        )
    )


if __name__ == "__main__":
    cli_entrypoint()
