from __future__ import annotations

import copy
import json
from typing import Any

from src.sandbox_backends.base import MountTree

INSTALL_COMMAND = "npm"
INSTALL_ARGS = [
    "install",
    "--prefer-offline",
    "--no-audit",
    "--no-fund",
    "--legacy-peer-deps",
]
DEV_COMMAND = "npm"
DEV_ARGS = ["run", "dev"]

BASE_PACKAGE_JSON: dict[str, Any] = {
    "name": "preview-project",
    "private": True,
    "version": "0.0.0",
    "type": "module",
    "scripts": {
        "dev": "vite --host",
        "build": "vite build",
    },
    "dependencies": {
        "react": "^18.3.1",
        "react-dom": "^18.3.1",
        "react-router-dom": "^7.1.1",
        "framer-motion": "^11.14.4",
        "lucide-react": "^0.460.0",
        "clsx": "^2.1.1",
        "tailwind-merge": "^2.5.5",
        "class-variance-authority": "^0.7.1",
        "axios": "^1.7.9",
        "zustand": "^5.0.2",
        "date-fns": "^4.1.0",
    },
    "devDependencies": {
        "@vitejs/plugin-react": "^4.3.4",
        "vite": "^6.0.3",
        "typescript": "^5.7.2",
        "@types/react": "^18.3.12",
        "@types/react-dom": "^18.3.1",
        "tailwindcss": "^3.4.17",
        "postcss": "^8.4.49",
        "autoprefixer": "^10.4.20",
    },
}

_BASE_INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Preview</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.tsx"></script>
  </body>
</html>"""

_BASE_MAIN_TSX = """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App'
import './index.css'
ReactDOM.createRoot(document.getElementById('root')!).render(<React.StrictMode><App /></React.StrictMode>)"""


def _file(contents: str) -> dict[str, Any]:
    return {"file": {"contents": contents}}


def base_files() -> MountTree:
    """Project skeleton mounted before the one-time base dependency install."""
    return {
        "package.json": _file(json.dumps(BASE_PACKAGE_JSON, indent=2)),
        "vite.config.ts": _file(
            "import { defineConfig } from 'vite'\n"
            "import react from '@vitejs/plugin-react'\n"
            "export default defineConfig({ plugins: [react()] })"
        ),
        "index.html": _file(_BASE_INDEX_HTML),
        "tailwind.config.js": _file(
            "export default {\n"
            '  content: ["./index.html", "./src/**/*.{js,ts,jsx,tsx}"],\n'
            "  theme: { extend: {} },\n"
            "  plugins: [],\n"
            "}"
        ),
        "postcss.config.js": _file(
            "export default {\n  plugins: { tailwindcss: {}, autoprefixer: {} },\n}"
        ),
        "src": {
            "directory": {
                "main.tsx": _file(_BASE_MAIN_TSX),
                "App.tsx": _file(
                    "export default function App() { return "
                    '<div className="p-4 text-white bg-zinc-900 min-h-screen">Loading...</div> }'
                ),
                "index.css": _file(
                    "@tailwind base;\n@tailwind components;\n@tailwind utilities;"
                ),
            }
        },
    }


def render_error_reporter_script() -> str:
    # Dependency-free snippet: forwards uncaught errors and unhandled rejections
    # from the preview frame to the parent window via postMessage.
    return (
        "<script>\n"
        "(function(){\n"
        "  function _send(message,stack,errorType){\n"
        "    try{\n"
        "      window.parent.postMessage({\n"
        "        type:'RUNTIME_ERROR',\n"
        "        message:String(message||''),\n"
        "        stack:String(stack||''),\n"
        "        errorType:String(errorType||'Error')\n"
        "      },'*');\n"
        "    }catch(e){}\n"
        "  }\n"
        "  window.addEventListener('error',function(ev){\n"
        "    var err=ev&&ev.error;\n"
        "    _send((err&&err.message)||ev.message,(err&&err.stack)||'',(err&&err.name)||'Error');\n"
        "  });\n"
        "  window.addEventListener('unhandledrejection',function(ev){\n"
        "    var r=ev&&ev.reason;\n"
        "    _send((r&&r.message)||String(r),(r&&r.stack)||'',(r&&r.name)||'UnhandledRejection');\n"
        "  });\n"
        "  var _origError=console.error;\n"
        "  console.error=function(){\n"
        "    try{\n"
        "      var first=arguments[0];\n"
        "      if(first instanceof Error){ _send(first.message,first.stack,first.name); }\n"
        "      else if(typeof first==='string' && first.indexOf('The above error occurred')!==-1){\n"
        "        _send(first,'','ReactErrorBoundary');\n"
        "      }\n"
        "    }catch(e){}\n"
        "    return _origError.apply(console,arguments);\n"
        "  };\n"
        "})();\n"
        "</script>"
    )


def inject_error_reporter(html: str) -> str:
    """Insert the error reporter immediately before the closing head tag.

    HTML without a `</head>` is returned unchanged. Already instrumented HTML is
    not instrumented twice.
    """
    if "type:'RUNTIME_ERROR'" in html:
        return html
    if "</head>" not in html:
        return html
    return html.replace("</head>", f"  {render_error_reporter_script()}\n  </head>", 1)


def with_error_reporter(tree: MountTree) -> tuple[MountTree, bool]:
    """Return a copy of `tree` whose root index.html carries the error reporter."""
    entry = tree.get("index.html")
    if not isinstance(entry, dict):
        return tree, False
    file_obj = entry.get("file")
    if not isinstance(file_obj, dict):
        return tree, False
    contents = file_obj.get("contents")
    if not isinstance(contents, str):
        return tree, False

    patched = inject_error_reporter(contents)
    if patched == contents:
        return tree, False
    out = copy.copy(tree)
    out["index.html"] = {"file": {"contents": patched}}
    return out, True
