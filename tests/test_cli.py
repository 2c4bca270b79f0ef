"""
Tests for the template loader and the mustache-render command line.
"""

import json
import textwrap
from pathlib import Path

import pytest

from mustache import TemplateLoader, TextNode, VarNode
from mustache_render import load_data, main


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestTemplateLoader:

    def test_finds_suffixed_and_raw_names(self, tmp_path):
        write(tmp_path / "row.mustache", "{{name}}")
        write(tmp_path / "page.mustache.html", "<p>")
        write(tmp_path / "raw.txt", "raw")
        loader = TemplateLoader(tmp_path)

        assert loader("row") == [VarNode("name")]
        assert loader("page") == [TextNode("<p>")]
        assert loader("raw.txt") == [TextNode("raw")]

    def test_missing_partial_is_none(self, tmp_path):
        assert TemplateLoader(tmp_path)("nope") is None

    def test_parses_once(self, tmp_path):
        write(tmp_path / "row.mustache", "x")
        loader = TemplateLoader(tmp_path)

        assert loader("row") is loader("row")


class TestLoadData:

    def test_yaml(self, tmp_path):
        path = write(tmp_path / "d.yaml", "name: Red Bull\nitems:\n  - num: 100\n")
        assert load_data(path) == {"name": "Red Bull", "items": [{"num": 100}]}

    def test_json(self, tmp_path):
        path = write(tmp_path / "d.json", json.dumps({"price": 275}))
        assert load_data(path) == {"price": 275}

    def test_empty_and_missing(self, tmp_path):
        assert load_data(None) == {}
        assert load_data(write(tmp_path / "d.yml", "")) == {}

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ValueError, match="mapping"):
            load_data(write(tmp_path / "d.yaml", "- a\n- b\n"))


class TestMain:

    @pytest.fixture
    def project(self, tmp_path):
        write(tmp_path / "tpl" / "page.mustache", textwrap.dedent("""\
            {{name}}: {{#items}}{{num}} {{/items}}
            {{#tags}}<{{.}}>{{/tags}}
            {{> footer}}
            """))
        write(tmp_path / "tpl" / "footer.mustache", "-- {{name}} --\n")
        write(tmp_path / "data.yaml", textwrap.dedent("""\
            name: Red & Bull
            items:
              - num: 100
              - num: 101
            tags: [a, b]
            """))
        return tmp_path

    def test_renders_to_stdout(self, project, capsys):
        code = main([
            "--template", str(project / "tpl" / "page.mustache"),
            "--data", str(project / "data.yaml"),
        ])

        assert code == 0
        assert capsys.readouterr().out == (
            "Red &amp; Bull: 100 101 \n"
            "<a><b>\n"
            "-- Red &amp; Bull --\n"
        )

    def test_renders_to_file(self, project, capsys):
        out = project / "out.txt"
        code = main([
            "--template", str(project / "tpl" / "page.mustache"),
            "--data", str(project / "data.yaml"),
            "--output", str(out),
        ])

        assert code == 0
        assert out.read_text(encoding="utf-8").startswith("Red &amp; Bull: 100 101")
        assert "Wrote:" in capsys.readouterr().out

    def test_partials_dir(self, project, capsys):
        write(project / "other" / "footer.mustache", "other footer\n")
        code = main([
            "--template", str(project / "tpl" / "page.mustache"),
            "--partials-dir", str(project / "other"),
        ])

        assert code == 0
        assert capsys.readouterr().out.endswith("\nother footer\n")

    def test_dump_ast(self, tmp_path, capsys):
        tpl = write(tmp_path / "t.mustache", "Hi {{name}}{{>p}}")

        assert main(["--template", str(tpl), "--dump-ast"]) == 0
        assert capsys.readouterr().out == "[[T : Hi ], [V : name], [P : p]]\n"

    def test_missing_template(self, tmp_path, capsys):
        assert main(["--template", str(tmp_path / "nope.mustache")]) == 2
        assert "error:" in capsys.readouterr().err

    def test_syntax_error(self, tmp_path, capsys):
        tpl = write(tmp_path / "t.mustache", "{{#a}}")

        assert main(["--template", str(tpl)]) == 2
        assert "Unclosed" in capsys.readouterr().err

    def test_recursion_limit(self, tmp_path, capsys):
        tpl = write(tmp_path / "loop.mustache", "x{{>loop}}")

        assert main(["--template", str(tpl), "--max-depth", "5"]) == 2
        assert "nested" in capsys.readouterr().err

    def test_nested_arrays(self, tmp_path, capsys):
        tpl = write(tmp_path / "t.mustache", "{{#m}}[{{#.}}{{.}}{{/.}}]{{/m}}")
        data = write(tmp_path / "d.json", json.dumps({"m": [[1, 2], [3]]}))

        assert main(["--template", str(tpl), "--data", str(data)]) == 0
        assert capsys.readouterr().out == "[12][3]"

    def test_unwritable_output(self, tmp_path, capsys):
        tpl = write(tmp_path / "t.mustache", "x")

        assert main(["--template", str(tpl), "--output", str(tmp_path / "nodir" / "o.txt")]) == 2
        assert "error:" in capsys.readouterr().err
