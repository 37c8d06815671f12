"""Apply policy-selected S/MIME transforms to spooled mails."""

from pathlib import Path

import structlog

from smime_gate.core import sanitize_for_log
from smime_gate.exceptions import PersistReplaceError, SpoolError, ToolInvocationError
from smime_gate.models import Action, Batch, PersistedMail, TransformOutcome
from smime_gate.policy import Rule, RuleEngine
from smime_gate.policy.rules import DecryptRule, EncryptRule, SignRule, VerifyRule
from smime_gate.tool.base import SmimeTool
from smime_gate.transport.spool import SpoolStore

logger = structlog.get_logger(__name__)


class TransformAdapter:
    """Run one transform against a spooled mail and promote the result.

    A transform either replaces the spool file and the in-memory mail
    together, or leaves both exactly as they were.
    """

    def __init__(self, tool: SmimeTool, store: SpoolStore) -> None:
        self.tool = tool
        self.store = store

    async def apply(self, record: PersistedMail, rule: Rule, action: Action) -> TransformOutcome:
        """Apply ``action`` with ``rule``'s credentials to ``record``.

        The tool output goes to a byproduct file next to the spool file.
        On exit status 0 the byproduct replaces the spool file and the
        mail is re-parsed from it. Any failure (non-zero exit, timeout,
        launch error, failed rename) removes the byproduct and reports
        UNCHANGED.

        Args:
            record: The mail and its spool file.
            rule: The matched rule supplying credentials.
            action: Which transform to run.

        Returns:
            APPLIED if the spool file and mail were replaced, else UNCHANGED.
        """
        byproduct = self.store.byproduct_path(record.path)
        log = logger.bind(action=action.value, filename=record.path.name)

        try:
            returncode = await self._invoke(action, rule, record, byproduct)
        except ToolInvocationError as e:
            log.error("transform_tool_error", error=str(e))
            await self.store.release(byproduct)
            return TransformOutcome.UNCHANGED

        if returncode != 0:
            log.warning("transform_failed", returncode=returncode)
            await self.store.release(byproduct)
            return TransformOutcome.UNCHANGED

        try:
            await self.store.replace(byproduct, record.path)
        except PersistReplaceError as e:
            log.error("transform_replace_failed", error=str(e))
            await self.store.release(byproduct)
            return TransformOutcome.UNCHANGED

        mail = record.mail
        try:
            record.mail = await self.store.load(record.path, mail.sender, mail.recipients)
        except SpoolError as e:
            # The file changed but the mail could not follow; never forward it
            log.error("transform_reload_failed", error=str(e))
            record.stale = True
            return TransformOutcome.APPLIED

        log.info("transform_applied", size=len(record.mail.raw))
        return TransformOutcome.APPLIED

    async def _invoke(
        self, action: Action, rule: Rule, record: PersistedMail, byproduct: Path
    ) -> int:
        source = record.path
        if action == Action.SIGN and isinstance(rule, SignRule):
            return await self.tool.sign(rule, source, byproduct)
        if action == Action.ENCRYPT and isinstance(rule, EncryptRule):
            return await self.tool.encrypt(rule, source, byproduct)
        if action == Action.DECRYPT and isinstance(rule, DecryptRule):
            return await self.tool.decrypt(rule, source, byproduct)
        if action == Action.VERIFY and isinstance(rule, VerifyRule):
            return await self.tool.verify(rule, source, byproduct)
        raise TypeError(f"{type(rule).__name__} cannot drive a {action.value} transform")


class TransformPipeline:
    """Run SIGN, ENCRYPT, DECRYPT, VERIFY over every mail of a batch.

    Mails are processed one at a time, in receive order. DECRYPT and
    VERIFY are only considered for a mail when an ENCRYPT rule matched
    it; a mail without an ENCRYPT match goes no further than SIGN and
    the ENCRYPT lookup.
    """

    def __init__(self, engine: RuleEngine, adapter: TransformAdapter) -> None:
        self.engine = engine
        self.adapter = adapter

    async def process(self, batch: Batch) -> dict[str, dict[Action, TransformOutcome]]:
        """Process the whole batch.

        Returns:
            For each spool filename, the outcome of every stage that was
            looked up for that mail.
        """
        results: dict[str, dict[Action, TransformOutcome]] = {}
        for record in batch:
            results[record.path.name] = await self.process_mail(record)
        return results

    async def process_mail(self, record: PersistedMail) -> dict[Action, TransformOutcome]:
        """Run every stage that applies to ``record``.

        A stage that was looked up but found no rule reports UNCHANGED.
        DECRYPT and VERIFY are missing from the result when the ENCRYPT
        lookup found no rule, and later stages are missing once the
        record went stale.
        """
        outcomes: dict[Action, TransformOutcome] = {}
        logger.debug(
            "processing_mail",
            filename=record.path.name,
            sender=sanitize_for_log(record.mail.sender),
            recipients=record.mail.recipient_count,
        )

        outcomes[Action.SIGN] = await self._stage(
            record, Action.SIGN, self.engine.match_sign(record.mail)
        )
        if record.stale:
            return outcomes

        encrypt_rule = self.engine.match_encrypt(record.mail)
        outcomes[Action.ENCRYPT] = await self._stage(record, Action.ENCRYPT, encrypt_rule)
        if encrypt_rule is None:
            # TODO: confirm with the policy owners whether decrypt/verify
            # should really depend on an encrypt match
            return outcomes
        if record.stale:
            return outcomes

        outcomes[Action.DECRYPT] = await self._stage(
            record, Action.DECRYPT, self.engine.match_decrypt(record.mail)
        )
        if record.stale:
            return outcomes

        outcomes[Action.VERIFY] = await self._stage(
            record, Action.VERIFY, self.engine.match_verify(record.mail)
        )
        return outcomes

    async def _stage(
        self, record: PersistedMail, action: Action, rule: Rule | None
    ) -> TransformOutcome:
        if rule is None:
            logger.debug("transform_no_rule", action=action.value, filename=record.path.name)
            return TransformOutcome.UNCHANGED
        return await self.adapter.apply(record, rule, action)
