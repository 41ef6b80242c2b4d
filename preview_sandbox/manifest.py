"""Dependency manifests for previewed projects.

A manifest is the dependency half of a ``package.json``: regular and dev
dependencies (name -> version) plus the declared package manager. The
preview template image ships with a fixed set of packages already
installed; ``missing_dependencies`` computes what a project adds on top.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_PACKAGE_MANAGER_FIELD = "pnpm@8.15.0"

TEMPLATE_DEPENDENCIES: dict[str, str] = {
    "react": "^18.2.0",
    "react-dom": "^18.2.0",
    "react-router-dom": "^6.28.0",
    "@radix-ui/react-accordion": "1.2.2",
    "@radix-ui/react-alert-dialog": "1.1.4",
    "@radix-ui/react-aspect-ratio": "1.1.1",
    "@radix-ui/react-avatar": "1.1.2",
    "@radix-ui/react-checkbox": "1.1.3",
    "@radix-ui/react-collapsible": "1.1.2",
    "@radix-ui/react-context-menu": "2.2.4",
    "@radix-ui/react-dialog": "1.1.4",
    "@radix-ui/react-dropdown-menu": "2.1.4",
    "@radix-ui/react-hover-card": "1.1.4",
    "@radix-ui/react-label": "2.1.1",
    "@radix-ui/react-menubar": "1.1.4",
    "@radix-ui/react-navigation-menu": "1.2.3",
    "@radix-ui/react-popover": "1.1.4",
    "@radix-ui/react-progress": "1.1.1",
    "@radix-ui/react-radio-group": "1.2.2",
    "@radix-ui/react-scroll-area": "1.2.2",
    "@radix-ui/react-select": "2.1.4",
    "@radix-ui/react-separator": "1.1.1",
    "@radix-ui/react-slider": "1.2.2",
    "@radix-ui/react-slot": "1.1.1",
    "@radix-ui/react-switch": "1.1.2",
    "@radix-ui/react-tabs": "1.1.2",
    "@radix-ui/react-toast": "1.2.4",
    "@radix-ui/react-toggle": "1.1.1",
    "@radix-ui/react-toggle-group": "1.1.1",
    "@radix-ui/react-tooltip": "1.1.6",
    "@radix-ui/react-icons": "^1.3.0",
    "lucide-react": "^0.454.0",
    "framer-motion": "^12.23.12",
    "class-variance-authority": "^0.7.1",
    "clsx": "^2.1.1",
    "tailwind-merge": "^2.5.5",
    "cmdk": "1.0.4",
    "next-themes": "^0.4.6",
    "react-hook-form": "^7.60.0",
    "zod": "3.25.67",
    "@hookform/resolvers": "^3.10.0",
    "date-fns": "4.1.0",
    "recharts": "2.15.4",
    "sonner": "^1.7.4",
    "react-day-picker": "9.8.0",
    "input-otp": "1.4.1",
    "vaul": "^0.9.9",
    "embla-carousel-react": "8.5.1",
    "react-resizable-panels": "^2.1.7",
    "react-markdown": "^10.1.0",
    "remark-gfm": "^4.0.1",
    "@tanstack/react-table": "^8.20.5",
    "@vercel/node": "^3.0.0",
    "apexcharts": "^3.49.0",
    "react-apexcharts": "^1.4.1",
}

TEMPLATE_DEV_DEPENDENCIES: dict[str, str] = {
    "@types/react": "^18.2.43",
    "@types/react-dom": "^18.2.17",
    "@typescript-eslint/eslint-plugin": "^6.14.0",
    "@typescript-eslint/parser": "^6.14.0",
    "@vitejs/plugin-react": "^4.2.1",
    "autoprefixer": "^10.4.16",
    "eslint": "^8.55.0",
    "eslint-plugin-react-hooks": "^4.6.0",
    "eslint-plugin-react-refresh": "^0.4.5",
    "postcss": "^8.4.32",
    "tailwindcss": "^3.3.6",
    "typescript": "^5.2.2",
    "vite": "^5.0.8",
    "tailwindcss-animate": "^1.0.7",
}

DEFAULT_NPMRC = "\n".join(
    [
        "# pnpm configuration for faster installs and better performance",
        "prefer-frozen-lockfile=false",
        "auto-install-peers=true",
        "shamefully-hoist=true",
        "strict-peer-dependencies=false",
        "resolution-mode=highest",
        "store-dir=.pnpm-store",
        "cache-dir=.pnpm-cache",
    ]
)


class DependencyManifest(BaseModel):
    """Declared dependencies of a project."""

    dependencies: dict[str, str] = Field(default_factory=dict)
    dev_dependencies: dict[str, str] = Field(default_factory=dict)
    package_manager: str | None = None
    needs_full_install: bool = False

    @classmethod
    def from_package_json(cls, content: str) -> DependencyManifest:
        """Parse package.json text. Unreadable input yields an empty manifest
        flagged ``needs_full_install``."""
        try:
            parsed = json.loads(content)
        except (TypeError, ValueError):
            return cls(needs_full_install=True)
        if not isinstance(parsed, dict):
            return cls(needs_full_install=True)
        return cls(
            dependencies=_string_map(parsed.get("dependencies")),
            dev_dependencies=_string_map(parsed.get("devDependencies")),
            package_manager=_str_or_none(parsed.get("packageManager")),
        )

    @property
    def package_manager_name(self) -> str | None:
        """``pnpm@8.15.0`` -> ``pnpm``."""
        if not self.package_manager:
            return None
        name = self.package_manager.split("@", 1)[0].strip().lower()
        return name or None


def _str_or_none(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {
        str(name): str(version)
        for name, version in value.items()
        if isinstance(name, str) and name
    }


def package_specs(packages: dict[str, str]) -> list[str]:
    return [f"{name}@{version}" if version else name for name, version in packages.items()]


def missing_dependencies(
    manifest: DependencyManifest,
    preinstalled: DependencyManifest | None = None,
) -> tuple[list[str], list[str]]:
    """Return ``(regular, dev)`` package specs not already present.

    Presence is checked by name only, against both groups of
    ``preinstalled`` (the template by default).
    """
    if preinstalled is None:
        preinstalled = template_manifest()
    present = set(preinstalled.dependencies) | set(preinstalled.dev_dependencies)
    regular = {
        name: version
        for name, version in manifest.dependencies.items()
        if name not in present
    }
    dev = {
        name: version
        for name, version in manifest.dev_dependencies.items()
        if name not in present
    }
    return package_specs(regular), package_specs(dev)


def template_manifest() -> DependencyManifest:
    return DependencyManifest(
        dependencies=dict(TEMPLATE_DEPENDENCIES),
        dev_dependencies=dict(TEMPLATE_DEV_DEPENDENCIES),
        package_manager=DEFAULT_PACKAGE_MANAGER_FIELD,
    )


def default_package_json(name: str = "preview-app") -> str:
    """package.json written for projects that do not ship one."""
    payload = {
        "name": name,
        "version": "0.1.0",
        "private": True,
        "packageManager": DEFAULT_PACKAGE_MANAGER_FIELD,
        "scripts": {
            "dev": "vite",
            "build": "tsc && vite build",
            "preview": "vite preview",
            "lint": "eslint . --ext ts,tsx --report-unused-disable-directives --max-warnings 0",
        },
        "dependencies": {
            "react": "^18.2.0",
            "react-dom": "^18.2.0",
        },
        "devDependencies": {
            "@types/react": "^18.2.43",
            "@types/react-dom": "^18.2.17",
            "@typescript-eslint/eslint-plugin": "^6.14.0",
            "@typescript-eslint/parser": "^6.14.0",
            "@vitejs/plugin-react": "^4.2.1",
            "eslint": "^8.55.0",
            "eslint-plugin-react-hooks": "^4.6.0",
            "eslint-plugin-react-refresh": "^0.4.5",
            "typescript": "^5.2.2",
            "vite": "^5.0.8",
        },
    }
    return json.dumps(payload, indent=2)
