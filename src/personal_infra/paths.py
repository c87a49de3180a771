from __future__ import annotations

import os
import pathlib
import subprocess

HERE = pathlib.Path(__file__).absolute().parent


def top() -> pathlib.Path:
    if "PERSONAL_INFRA_TOP" in os.environ:
        return pathlib.Path(os.environ["PERSONAL_INFRA_TOP"])

    toplevel = subprocess.run(
        ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
        text=True,
        capture_output=True,
        check=False,
    ).stdout.strip()

    return pathlib.Path(toplevel) if toplevel else pathlib.Path.cwd()


class Paths:
    @property
    def root(self) -> pathlib.Path:
        """Return the deployments configuration directory.

        Set via the PERSONAL_INFRA_ROOT environment variable, otherwise the
        `deployments` directory at the top of the repository.
        """
        if "PERSONAL_INFRA_ROOT" in os.environ:
            return pathlib.Path(os.environ["PERSONAL_INFRA_ROOT"])

        return top() / "deployments"

    @property
    def assets(self) -> pathlib.Path:
        if "PERSONAL_INFRA_ASSETS" in os.environ:
            return pathlib.Path(os.environ["PERSONAL_INFRA_ASSETS"])

        return HERE / "assets"

    @property
    def proxy_build_context(self) -> pathlib.Path:
        return self.assets / "proxy"

    @property
    def warp_build_context(self) -> pathlib.Path:
        return self.assets / "proxy-with-warp"

    @property
    def warp_buildspec(self) -> pathlib.Path:
        return self.warp_build_context / "buildspec.yml"
