from pathlib import Path


def get_version() -> str:
    here = Path(__file__).resolve().parents[1]
    vfile = here.joinpath("VERSION")
    if vfile.exists():
        return vfile.read_text().strip()
    # installed without the source tree: use package metadata
    try:
        from importlib.metadata import PackageNotFoundError, version as _version

        return _version("streamrelay")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()
