"""Evaluation exchange against a single worker, with timeout and retry policy."""

from __future__ import annotations

import asyncio

import structlog

from tzarbot.communication.channel import RemoteChannel
from tzarbot.communication.wire import (
    EvaluationRequest,
    EvaluationResult,
    decode_report,
    result_from_report,
)
from tzarbot.config import RetryPolicy
from tzarbot.errors import CorruptPayloadError, ErrorKind, TransportError
from tzarbot.evolution.fitness import FitnessCalculator, GameFitnessCalculator
from tzarbot.genome.codec import payload_checksum, serialize

logger = structlog.get_logger()

# A corrupt response is retried once; the second one is final.
_MAX_CORRUPT_RESPONSES = 2


class Communicator:
    """Pushes a genome, asks for N games and awaits the result.

    Stateless per call: every ``evaluate`` builds its own payload and
    counters, so the same instance serves all workers concurrently.

    Failure policy:
    - transport failure or deadline exceeded: retried with exponential
      backoff up to ``retry.max_attempts``, then a failed result with
      ``ErrorKind.UNREACHABLE``;
    - corrupt response: discarded and retried once immediately, then a
      failed result with ``ErrorKind.CORRUPT``;
    - partial result: accepted as reported, scored over the games played.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        retry: RetryPolicy,
        fitness: FitnessCalculator | None = None,
    ) -> None:
        self._channel = channel
        self._retry = retry
        self._fitness = fitness or GameFitnessCalculator()

    async def evaluate(self, worker_name: str, request: EvaluationRequest) -> EvaluationResult:
        payload = serialize(request.genome)
        checksum = payload_checksum(payload)
        genome_id = request.genome.id
        transport_failures = 0
        corrupt_responses = 0

        while True:
            try:
                return await asyncio.wait_for(
                    self._exchange(worker_name, request, payload, checksum),
                    timeout=max(request.seconds_remaining(), 0.0),
                )
            except (TransportError, asyncio.TimeoutError) as exc:
                transport_failures += 1
                reason = str(exc) or "evaluation deadline exceeded"
                if transport_failures >= self._retry.max_attempts:
                    logger.warning(
                        "evaluation_unreachable",
                        worker=worker_name,
                        genome_id=genome_id,
                        attempts=transport_failures,
                        error=reason,
                    )
                    return EvaluationResult.failure(
                        genome_id,
                        ErrorKind.UNREACHABLE,
                        f"unreachable after {transport_failures} attempts: {reason}",
                        worker_name=worker_name,
                    )
                delay = self._retry.delay_for(transport_failures - 1)
                logger.warning(
                    "evaluation_retry",
                    worker=worker_name,
                    genome_id=genome_id,
                    attempt=transport_failures,
                    delay_s=delay,
                    error=reason,
                )
                await asyncio.sleep(delay)
            except CorruptPayloadError as exc:
                corrupt_responses += 1
                if corrupt_responses >= _MAX_CORRUPT_RESPONSES:
                    logger.warning(
                        "evaluation_corrupt",
                        worker=worker_name,
                        genome_id=genome_id,
                        error=str(exc),
                    )
                    return EvaluationResult.failure(
                        genome_id,
                        ErrorKind.CORRUPT,
                        f"corrupt response: {exc}",
                        worker_name=worker_name,
                    )
                logger.warning("evaluation_corrupt_retry", worker=worker_name, genome_id=genome_id, error=str(exc))

            request = request.renewed()

    async def _exchange(
        self,
        worker_name: str,
        request: EvaluationRequest,
        payload: bytes,
        checksum: str,
    ) -> EvaluationResult:
        await self._channel.push_genome(worker_name, payload, checksum)
        raw = await self._channel.request_evaluation(worker_name, request.encode(checksum))
        report = decode_report(raw)
        result = result_from_report(report, request, checksum, worker_name, self._fitness)
        if report.stopped_early or result.games_played < request.games_to_play:
            logger.info(
                "evaluation_partial",
                worker=worker_name,
                genome_id=result.genome_id,
                games_played=result.games_played,
                games_requested=request.games_to_play,
            )
        return result
