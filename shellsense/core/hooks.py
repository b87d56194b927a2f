# shellsense/core/hooks.py
from __future__ import annotations

import os

SUPPORTED_SHELLS = ("bash", "zsh")

BASH_HOOK = r"""# shellsense hook for bash
# Add to ~/.bashrc:  eval "$(shellsense hook bash)"
# Hooks record commands and exit codes only. To capture output too, run a
# command through the wrapper: shellsense run -- make test
if command -v shellsense >/dev/null 2>&1 && [ -z "$__SHELLSENSE_HOOKED" ]; then
  __SHELLSENSE_HOOKED=1
  export SHELLSENSE_SESSION="${SHELLSENSE_SESSION:-$(shellsense capture session-start --shell bash 2>/dev/null)}"
  __shellsense_cmd=""
  __shellsense_armed=0

  __shellsense_preexec() {
    [ "$__shellsense_armed" = 1 ] || return
    [ -n "$COMP_LINE" ] && return
    __shellsense_armed=0
    __shellsense_cmd="$(shellsense capture start --session "$SHELLSENSE_SESSION" --shell bash \
      --cwd "$PWD" --line "$BASH_COMMAND" 2>/dev/null)"
  }

  __shellsense_precmd() {
    local code=$?
    if [ -n "$__shellsense_cmd" ]; then
      (shellsense capture end "$__shellsense_cmd" "$code" --session "$SHELLSENSE_SESSION" \
        --shell bash >/dev/null 2>&1 &)
      __shellsense_cmd=""
    fi
    return $code
  }

  __shellsense_arm() { __shellsense_armed=1; }

  trap '__shellsense_preexec' DEBUG
  PROMPT_COMMAND="__shellsense_precmd${PROMPT_COMMAND:+; $PROMPT_COMMAND}; __shellsense_arm"
  trap 'shellsense capture session-end --session "$SHELLSENSE_SESSION" >/dev/null 2>&1' EXIT
fi
"""

ZSH_HOOK = r"""# shellsense hook for zsh
# Add to ~/.zshrc:  eval "$(shellsense hook zsh)"
# Hooks record commands and exit codes only. To capture output too, run a
# command through the wrapper: shellsense run -- make test
if (( $+commands[shellsense] )) && [[ -z "$__SHELLSENSE_HOOKED" ]]; then
  __SHELLSENSE_HOOKED=1
  export SHELLSENSE_SESSION="${SHELLSENSE_SESSION:-$(shellsense capture session-start --shell zsh 2>/dev/null)}"
  typeset -g __shellsense_cmd=""

  __shellsense_preexec() {
    __shellsense_cmd="$(shellsense capture start --session "$SHELLSENSE_SESSION" --shell zsh \
      --cwd "$PWD" --line "$1" 2>/dev/null)"
  }

  __shellsense_precmd() {
    local code=$?
    if [[ -n "$__shellsense_cmd" ]]; then
      shellsense capture end "$__shellsense_cmd" "$code" --session "$SHELLSENSE_SESSION" \
        --shell zsh >/dev/null 2>&1 &!
      __shellsense_cmd=""
    fi
    return $code
  }

  __shellsense_exit() {
    shellsense capture session-end --session "$SHELLSENSE_SESSION" >/dev/null 2>&1
  }

  autoload -Uz add-zsh-hook
  add-zsh-hook preexec __shellsense_preexec
  add-zsh-hook precmd __shellsense_precmd
  add-zsh-hook zshexit __shellsense_exit
fi
"""


def detect_shell() -> str:
    """Best guess at the interactive shell from the environment."""
    if os.environ.get("NU_VERSION"):
        return "nushell"
    if os.environ.get("ZSH_VERSION"):
        return "zsh"
    if os.environ.get("BASH_VERSION"):
        return "bash"
    name = os.path.basename(os.environ.get("SHELL", ""))
    if name in ("bash", "zsh"):
        return name
    if name in ("nu", "nushell"):
        return "nushell"
    return "unknown"


def hook_script(shell: str) -> str:
    if shell == "bash":
        return BASH_HOOK
    if shell == "zsh":
        return ZSH_HOOK
    raise ValueError(f"no hook available for shell {shell!r} (supported: {', '.join(SUPPORTED_SHELLS)})")
