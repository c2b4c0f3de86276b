"""Scripted stand-in for ``nix-env -qa --json -f <archive-url>``.

Used by the CLI tests as ``resolver.command``. The archive URL is the last
argument; the commit it names selects the canned behavior.
"""

import json
import sys

LISTINGS = {
    "aaa111": {"nixpkgs.foo": {"name": "foo-1.0", "version": "1.0"}},
    "ccc333": {
        "nixpkgs.foo": {"name": "foo-1.1", "version": "1.1"},
        "nixpkgs.firefox": {"name": "firefox-120.0", "version": "120.0"},
        "nixpkgs.firefox-esr": {"name": "firefox-esr-115.5", "version": "115.5"},
        "nixpkgs.o'reilly": {"name": "o'reilly"},
    },
}


def main(argv: list[str]) -> int:
    url = argv[-1] if argv else ""
    for sha, listing in LISTINGS.items():
        if sha in url:
            print(json.dumps(listing))
            return 0
    sys.stderr.write(f"error: unable to download '{url}': network unreachable\n")
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
