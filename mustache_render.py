#!/usr/bin/env python3
"""
Render a Mustache template against a JSON or YAML data file.

Usage:
  python mustache_render.py --template templates/page.mustache --data page.yaml --output page.html

Data files ending in .json are read as JSON, anything else as YAML. The
top level must be a mapping; it becomes the root context:
- scalars become variables ({{name}})
- flat mappings become value sections ({{#person}}{{first}}{{/person}})
- lists become list sections, one child context per item; scalar items
  are available as {{.}}
- null and false are left unbound, so sections on them are skipped

Partials ({{> name}}) are looked up in the template's directory unless
--partials-dir is given.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from mustache import DEFAULT_MAX_DEPTH, Context, MustacheError, Renderer, TemplateLoader, format_nodes, parse

log = logging.getLogger(__name__)

# -----------------------------
# Data loading
# -----------------------------
def load_data(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level data must be a mapping, got {type(data).__name__}")
    return data

# -----------------------------
# CLI
# -----------------------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="mustache-render", description="Render a Mustache template.")
    ap.add_argument("--template", required=True, help="Path to the Mustache template")
    ap.add_argument("--data", default=None, help="Path to a JSON or YAML data file")
    ap.add_argument("--output", default=None, help="Path to write rendered output (default: stdout)")
    ap.add_argument("--partials-dir", default=None, help="Directory holding partials (default: template directory)")
    ap.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Limit for nested partial/lambda expansion")
    ap.add_argument("--dump-ast", action="store_true", help="Print the parsed template instead of rendering it")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    template_path = Path(args.template)
    partials_dir = Path(args.partials_dir) if args.partials_dir else template_path.parent

    try:
        nodes = parse(template_path.read_text(encoding="utf-8"))
        if args.dump_ast:
            print(format_nodes(nodes))
            return 0
        context = Context.from_mapping(load_data(Path(args.data) if args.data else None))
        renderer = Renderer(partials=TemplateLoader(partials_dir), max_depth=args.max_depth)
        out = renderer.render_nodes(nodes, context)
        if args.output:
            out_path = Path(args.output)
            out_path.write_text(out, encoding="utf-8")
            print(f"Wrote: {out_path}")
        else:
            sys.stdout.write(out)
    except (MustacheError, OSError, ValueError, yaml.YAMLError) as e:
        log.debug("render failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
