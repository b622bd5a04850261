"""Idempotent provisioning of lab containers.

Runs on every container acquisition, including reused containers, so each
step checks for its own result before doing any work.
"""

import logging
from typing import Any

from labforge.common import settings
from labforge.orchestrator.results import StepResult, StepStatus
from labforge.orchestrator.runtime import DockerRuntime

logger = logging.getLogger(__name__)

LOG_PREVIEW_CHARS = 200

BOOTSTRAP_PACKAGES = (
    "openssh-server sudo vim nano curl wget net-tools iputils-ping procps "
    "grep sed gawk git python3 build-essential zsh"
)

BOOTSTRAP_SCRIPT = rf"""set -e

if ! command -v sshd >/dev/null 2>&1 || ! command -v zsh >/dev/null 2>&1; then
  export DEBIAN_FRONTEND=noninteractive
  apt-get update -qq
  apt-get install -y -qq {BOOTSTRAP_PACKAGES}
fi

if ! id -u {settings.STUDENT_USER} >/dev/null 2>&1; then
  useradd -m -s /bin/bash {settings.STUDENT_USER} || true
  echo "{settings.STUDENT_USER}:{settings.STUDENT_PASSWORD}" | chpasswd
  echo "{settings.STUDENT_USER} ALL=(ALL) NOPASSWD:ALL" >> /etc/sudoers
fi

mkdir -p {settings.STUDENT_HOME}/.ssh
chmod 700 {settings.STUDENT_HOME}/.ssh
chown -R {settings.STUDENT_USER}:{settings.STUDENT_USER} {settings.STUDENT_HOME}

if [ ! -f {settings.STUDENT_HOME}/.zshrc ]; then
cat <<'ZRC' > {settings.STUDENT_HOME}/.zshrc
export ZSH_DISABLE_COMPFIX=true
export PATH="$HOME/bin:$HOME/.local/bin:/usr/local/bin:$PATH"

HISTFILE=~/.zsh_history
HISTSIZE=10000
SAVEHIST=10000
setopt appendhistory
setopt sharehistory
setopt hist_ignore_dups
setopt hist_ignore_space

autoload -Uz compinit
compinit

PROMPT='%F{{cyan}}%n@%m%f %F{{yellow}}%1~%f %# '

alias ll='ls -lah'
alias gs='git status'
alias ..='cd ..'
alias ...='cd ../..'

autoload -U colors && colors
ZRC
chown {settings.STUDENT_USER}:{settings.STUDENT_USER} {settings.STUDENT_HOME}/.zshrc
fi

if [ ! -f {settings.STUDENT_HOME}/.bash_profile ]; then
cat <<'LOGO_EOF' > {settings.STUDENT_HOME}/.bash_profile
echo ""
echo "=============================================================="
echo "        Linux Lab Forge - Interactive Learning"
echo "=============================================================="
echo ""
echo "Your lab environment is ready!"
echo "Type 'ls' to see available exercises"
echo "Run 'finished' when you complete all exercises"
echo ""
LOGO_EOF
chown {settings.STUDENT_USER}:{settings.STUDENT_USER} {settings.STUDENT_HOME}/.bash_profile
fi

touch {settings.STUDENT_HOME}/.bashrc
grep -qxF 'source ~/.bash_profile' {settings.STUDENT_HOME}/.bashrc || echo 'source ~/.bash_profile' >> {settings.STUDENT_HOME}/.bashrc
chown {settings.STUDENT_USER}:{settings.STUDENT_USER} {settings.STUDENT_HOME}/.bashrc

mkdir -p /var/run/sshd /run/sshd
/usr/sbin/sshd || true
"""


class BootstrapError(Exception):
    """The bootstrap script failed inside the container."""


class BootstrapRunner:
    def __init__(self, runtime: DockerRuntime, script: str = BOOTSTRAP_SCRIPT):
        self.runtime = runtime
        self.script = script

    async def run(self, container: Any) -> StepResult:
        """Run the bootstrap script as root.

        Raises:
            BootstrapError: if the script exits non-zero
        """
        logger.info("Running bootstrap script in container...")
        result = await self.runtime.exec(container, ["/bin/bash", "-lc", self.script])

        if result.output:
            logger.info(f"  Bootstrap output: {result.output[:LOG_PREVIEW_CHARS]}")
            logger.debug(f"Full bootstrap output: {result.output}")

        if result.exit_code != 0:
            raise BootstrapError(
                f"Bootstrap script exited with code {result.exit_code}: "
                f"{result.output.strip()[-LOG_PREVIEW_CHARS:]}"
            )

        logger.info("Bootstrap script completed")
        return StepResult(StepStatus.OK, output=result.output)
