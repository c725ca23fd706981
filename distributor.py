import asyncio
from dataclasses import dataclass

from records import MessageRecord, RecordStore

DEFAULT_PLACEHOLDER = "<STEAM_KEY>"
DEFAULT_SEND_DELAY = 20.0


class InsufficientSupply(Exception):
    def __init__(self, have: int, need: int):
        self.have = have
        self.need = need
        super().__init__(f"There are not enough keys for all the given users (have={have}, need={need})")


class DeliveryFailed(Exception):
    def __init__(self, recipient: str, line_number: int, underlying=None):
        self.recipient = recipient
        self.line_number = line_number
        self.underlying = underlying
        reason = f": {underlying}" if underlying else ""
        super().__init__(f"Failed to deliver a key to {recipient} (usernames file line {line_number}){reason}")


class RecordNotSaved(Exception):
    def __init__(self, recipient: str, line_number: int, underlying=None):
        self.recipient = recipient
        self.line_number = line_number
        self.underlying = underlying
        super().__init__(
            f"Key was sent to {recipient} (usernames file line {line_number}) but could not be recorded: {underlying}"
        )


class DistributionInProgress(Exception):
    pass


@dataclass(frozen=True)
class Pairing:
    recipient: MessageRecord
    code: MessageRecord


@dataclass(frozen=True)
class StatusReport:
    total_recipients: int
    total_codes: int
    consumed_recipients: int
    consumed_codes: int
    running: bool = False

    @property
    def remaining_recipients(self) -> int:
        return self.total_recipients - self.consumed_recipients

    @property
    def remaining_codes(self) -> int:
        return self.total_codes - self.consumed_codes

    def summary(self) -> str:
        state = "running" if self.running else "idle"
        return (
            f"Users: {self.consumed_recipients}/{self.total_recipients} sent, {self.remaining_recipients} left | "
            f"Keys: {self.consumed_codes}/{self.total_codes} used, {self.remaining_codes} left | {state}"
        )


class KeyDistributor:
    def __init__(
        self,
        recipients_path: str,
        codes_path: str,
        template: str,
        send_private_message,
        delay: float = DEFAULT_SEND_DELAY,
        placeholder: str = DEFAULT_PLACEHOLDER,
    ):
        self.recipients = RecordStore(recipients_path)
        self.codes = RecordStore(codes_path)
        self.template = template
        self.send_private_message = send_private_message
        self.delay = delay
        self.placeholder = placeholder

        self._pairings = None
        self._run_lock = asyncio.Lock()
        self._sleep = asyncio.sleep

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def render_message(self, code: str) -> str:
        return self.template.replace(self.placeholder, code)

    def prepare(self) -> list:
        """
        Load both files and pair the i-th unused user with the i-th unused key.
        Raises FileUnavailable or InsufficientSupply before anything is sent.
        """
        if self.running:
            raise DistributionInProgress("Cannot reload the record files during a distribution run")
        return self._prepare()

    def _prepare(self) -> list:
        self._pairings = None
        self.recipients.load()
        self.codes.load()

        users = self.recipients.unconsumed()
        keys = self.codes.unconsumed()

        if self.codes.consumed_count():
            print("[Keys] Some keys have already been used, these will be omitted from the pool.")
        if self.recipients.consumed_count():
            print("[Keys] Some users have already gotten a key, these will be omitted from the pool.")

        if len(keys) < len(users):
            raise InsufficientSupply(have=len(keys), need=len(users))

        self._pairings = [Pairing(recipient=u, code=k) for u, k in zip(users, keys)]
        return list(self._pairings)

    def preview(self, limit: int = 5) -> tuple:
        users = [r.value for r in self.recipients.unconsumed()[:limit]]
        keys = [r.value for r in self.codes.unconsumed()[:limit]]
        return users, keys

    async def run(self) -> int:
        if self._run_lock.locked():
            raise DistributionInProgress("A key distribution run is already in progress")

        async with self._run_lock:
            pairings = self._pairings if self._pairings is not None else self._prepare()
            # Next run starts from what is on disk
            self._pairings = None

            print(f"[Keys] Sending {len(pairings)} keys")
            sent = 0
            for i, pair in enumerate(pairings):
                if i > 0 and self.delay:
                    await self._sleep(self.delay)

                await self._deliver(pair)
                # Key before user: an interrupted pair can waste a key but never reuse one
                try:
                    self.codes.mark_consumed(pair.code)
                    self.recipients.mark_consumed(pair.recipient)
                except OSError as e:
                    raise RecordNotSaved(pair.recipient.value, pair.recipient.line_number, e) from e
                sent += 1
                print(f"[Keys] ({sent}/{len(pairings)}) Key sent to {pair.recipient.value}")

            print(f"[Keys] Distribution finished, {sent} keys sent")
            return sent

    async def _deliver(self, pair: Pairing):
        text = self.render_message(pair.code.value)
        try:
            ok = await self.send_private_message(pair.recipient.value, text)
        except Exception as e:
            raise DeliveryFailed(pair.recipient.value, pair.recipient.line_number, e) from e
        if ok is False:
            raise DeliveryFailed(pair.recipient.value, pair.recipient.line_number)

    def status_report(self) -> StatusReport:
        if not self.recipients.records and not self.codes.records:
            self.recipients.load()
            self.codes.load()
        return StatusReport(
            total_recipients=len(self.recipients.records),
            total_codes=len(self.codes.records),
            consumed_recipients=self.recipients.consumed_count(),
            consumed_codes=self.codes.consumed_count(),
            running=self.running,
        )
