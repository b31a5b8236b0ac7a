import time
from typing import Any, Callable, Dict, List, Sequence

from permissions_exporter.graph_client import PERMISSION_SELECT, GraphError, chunks, parse_retry_after
from permissions_exporter.models import BatchJob, RemoteItem, RetrievalResult
from permissions_exporter.normalizer import normalize_permission
from permissions_exporter.retry import RetryController
from permissions_exporter.runtime_logger import emit


PROGRESS_EVERY = 10


def retrieve_sequential(
    client,
    drive_id: str,
    files: Sequence[RemoteItem],
    *,
    delay_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> RetrievalResult:
    result = RetrievalResult()
    total = len(files)
    emit("INFO", "RETRIEVER", f"Processing permissions sequentially: files={total}")

    for index, item in enumerate(files):
        if index == 0 or (index + 1) % PROGRESS_EVERY == 0:
            emit("INFO", "RETRIEVER", f"Progress: {index + 1}/{total} files processed")
        try:
            permissions = client.list_permissions(drive_id, item.id)
        except Exception as exc:
            result.error_count += 1
            if isinstance(exc, GraphError) and exc.is_throttled:
                result.throttle_count += 1
            emit("WARN", "RETRIEVER", f"Error processing file: name={item.name} id={item.id} error={exc}")
        else:
            for permission in permissions or []:
                result.records.append(normalize_permission(item, permission))
        sleep(delay_seconds)

    _log_completed(result)
    return result


def _sub_response_error(sub: Dict[str, Any], url: str) -> GraphError:
    status = int(sub.get("status") or 0)
    body = sub.get("body")
    message = "batch request failed"
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message") or body["error"].get("code") or message
    headers = sub.get("headers") or {}
    return GraphError(status, message, url, "", parse_retry_after(headers.get("Retry-After")))


def _extract_permissions(
    client,
    responses_by_id: Dict[str, Dict[str, Any]],
    token: str,
    item: RemoteItem,
) -> List[Dict[str, Any]]:
    sub = responses_by_id.get(token)
    url = f"$batch#{token}"
    if sub is None:
        raise GraphError(0, "no response for request in batch", url)
    status = int(sub.get("status") or 0)
    if not 200 <= status < 300:
        raise _sub_response_error(sub, url)

    body = sub.get("body") or {}
    if not isinstance(body, dict):
        raise GraphError(status, "unexpected batch response body", url)
    permissions = list(body.get("value") or [])
    next_link = body.get("@odata.nextLink")
    if next_link:
        permissions.extend(client.iter_paged(next_link))
    return permissions


def retrieve_batched(
    client,
    drive_id: str,
    files: Sequence[RemoteItem],
    *,
    batch_size: int,
    delay_seconds: float,
    controller: RetryController,
    sleep: Callable[[float], None] = time.sleep,
) -> RetrievalResult:
    """Fetch permissions for ``files`` with one Graph `$batch` per group.

    A sub-response that cannot be used is counted and skipped. If the
    controller gives up on a group, its error propagates and the remaining
    groups are not attempted.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    result = RetrievalResult()
    total = len(files)
    total_batches = (total + batch_size - 1) // batch_size
    throttles_before = controller.throttle_count
    emit("INFO", "RETRIEVER", f"Processing permissions using batching: files={total} batches={total_batches}")

    for batch_number, group in enumerate(chunks(files, batch_size), start=1):
        emit("INFO", "RETRIEVER", f"Processing batch {batch_number}/{total_batches} ({len(group)} files)")
        job = BatchJob.for_items(group)
        body = job.to_graph_body(drive_id, PERMISSION_SELECT)

        response = controller.execute(lambda: client.submit_batch(body))

        responses_by_id: Dict[str, Dict[str, Any]] = {}
        for sub in response.get("responses") or []:
            if isinstance(sub, dict) and sub.get("id") is not None:
                responses_by_id[str(sub["id"])] = sub

        for token, item in job:
            try:
                permissions = _extract_permissions(client, responses_by_id, token, item)
            except Exception as exc:
                result.error_count += 1
                if isinstance(exc, GraphError) and exc.is_throttled:
                    result.throttle_count += 1
                emit("WARN", "RETRIEVER", f"Error processing file in batch: name={item.name} id={item.id} error={exc}")
                continue
            for permission in permissions:
                result.records.append(normalize_permission(item, permission))

        sleep(delay_seconds)

    result.throttle_count += controller.throttle_count - throttles_before
    _log_completed(result)
    return result


def _log_completed(result: RetrievalResult):
    emit(
        "INFO",
        "RETRIEVER",
        f"Completed: permissions={len(result.records)} errors={result.error_count} throttle_events={result.throttle_count}",
    )
