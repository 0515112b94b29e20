"""Confirmation gates in front of costly or destructive operations.

A gate only answers yes or no. Callers abort without doing any work when a
gate answers no.
"""
from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional, TextIO

InputFunc = Callable[[str], str]

YES_ANSWERS = ("y", "yes")
NO_ANSWERS = ("n", "no")


class Gate(ABC):
  def __init__(
    self,
    message: str,
    *,
    assume: Any = None,
    input_func: Optional[InputFunc] = None,
    stream: Optional[TextIO] = None,
  ) -> None:
    self.message = message
    self.assume = assume
    self._input = input_func or input
    self._stream = stream

  @property
  def stream(self) -> TextIO:
    return self._stream or sys.stdout

  def _ask(self, prompt: str) -> Optional[str]:
    try:
      return self._input(prompt)
    except EOFError:
      return None

  def confirm(self) -> bool:
    if self.assume is not None:
      return self.assume
    return self._prompt()

  @abstractmethod
  def _prompt(self) -> bool:
    raise NotImplementedError


class BooleanGate(Gate):
  """Yes/no question; an empty answer takes the default."""

  def __init__(self, message: str, default: bool = False, **kwargs) -> None:
    super().__init__(message, **kwargs)
    self.default = default

  def _prompt(self) -> bool:
    suffix = "[Y/n]" if self.default else "[y/N]"
    while True:
      answer = self._ask(f"{self.message} {suffix} ")
      if answer is None:
        return False
      normalized = answer.strip().lower()
      if not normalized:
        return self.default
      if normalized in YES_ANSWERS:
        return True
      if normalized in NO_ANSWERS:
        return False
      print("Please answer 'y' or 'n'.", file=self.stream)


class PhraseGate(Gate):
  """Requires the exact phrase, case-sensitive.

  Surrounding whitespace is stripped before comparing, so a trailing space
  or newline is accepted but a different case or a substring is not.
  Rejected input is re-prompted up to ``max_attempts`` times.
  """

  def __init__(self, message: str, phrase: str, max_attempts: int = 3, **kwargs) -> None:
    super().__init__(message, **kwargs)
    if not phrase:
      raise ValueError("PhraseGate requires a non-empty phrase.")
    self.phrase = phrase
    self.max_attempts = max(1, max_attempts)

  def matches(self, answer: Optional[str]) -> bool:
    return answer is not None and answer.strip() == self.phrase

  def confirm(self) -> bool:
    if isinstance(self.assume, str):
      return self.matches(self.assume)
    return super().confirm()

  def _prompt(self) -> bool:
    for _ in range(self.max_attempts):
      answer = self._ask(f"{self.message}: ")
      if answer is None:
        return False
      if self.matches(answer):
        return True
      print(f"You must type '{self.phrase}' exactly to confirm.", file=self.stream)
    return False


def confirm_all(gates: Iterable[Gate]) -> bool:
  for gate in gates:
    if not gate.confirm():
      return False
  return True
