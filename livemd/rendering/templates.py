"""
HTML shells for rendered pages and the generated index.

Both embed the live-reload client: an EventSource on the reload
endpoint that reloads the page whenever a `reload` event arrives.
"""

from string import Template


RELOAD_SCRIPT = Template("""    <script>
        (function () {
            var events = new EventSource("$reload_path");
            events.addEventListener("reload", function () {
                events.close();
                window.location.reload();
            });
        })();
    </script>
""")

BASE_STYLE = """    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif;
            line-height: 1.6;
            max-width: 800px;
            margin: 0 auto;
            padding: 1rem;
            color: #333;
        }
        pre, code {
            background-color: #f6f8fa;
            border-radius: 3px;
            padding: 0.2em 0.4em;
            font-family: SFMono-Regular, Consolas, "Liberation Mono", Menlo, monospace;
        }
        pre code { padding: 0; }
        pre { padding: 16px; overflow: auto; }
        blockquote {
            margin: 0;
            padding-left: 1em;
            border-left: 4px solid #ddd;
            color: #666;
        }
        img { max-width: 100%; height: auto; }
        table { border-collapse: collapse; width: 100%; margin: 1em 0; }
        th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
        th { background-color: #f6f8fa; }
        a { color: #0366d6; text-decoration: none; }
        a:hover { text-decoration: underline; }
        .file-list { list-style: none; padding: 0; }
        .file-list li { margin: 0.5em 0; padding: 0.5em; background: #f6f8fa; border-radius: 3px; }
        .file-list .path { color: #6a737d; font-size: 0.85em; margin-left: 0.5em; }
    </style>
"""

PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>$title</title>
$style$script</head>
<body>
$body
</body>
</html>
""")

INDEX_ITEM = Template("""        <li><a href="$href">$name</a>$location</li>
""")

INDEX_BODY = Template("""    <h1>$heading</h1>
    <ul class="file-list">
$items    </ul>""")


def page(title: str, body: str, reload_path: str) -> str:
    """Wrap already-escaped title and body HTML in a full document."""
    return PAGE.substitute(
        title=title,
        body=body,
        style=BASE_STYLE,
        script=RELOAD_SCRIPT.substitute(reload_path=reload_path),
    )
