from typing import Optional


class StepBudgetExceeded(Exception):
    pass


class StepGovernor:
    """
    Step accounting for one agent run.

    Pure counter/policy: no I/O, no clock. The loop asks should_continue()
    before every model turn and calls record_step() when it starts one.
    """

    def __init__(self, max_steps: int):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.max_steps = max_steps
        self.current_step = 0
        self._reached_limit = False

    def should_continue(
        self, step: Optional[int] = None, max_steps: Optional[int] = None
    ) -> bool:
        step = self.current_step if step is None else step
        max_steps = self.max_steps if max_steps is None else max_steps
        return step < max_steps

    def record_step(self) -> int:
        if not self.should_continue():
            self._reached_limit = True
            raise StepBudgetExceeded(
                f"Step {self.current_step + 1} would exceed the budget of {self.max_steps}"
            )
        self.current_step += 1
        return self.current_step

    def mark_limit_reached(self) -> None:
        self._reached_limit = True

    def has_reached_limit(self) -> bool:
        return self._reached_limit

    @property
    def steps_remaining(self) -> int:
        return self.max_steps - self.current_step
