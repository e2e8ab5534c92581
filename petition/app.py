from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from petition import services
from petition.analysis import (
    PREREQUISITES as ANALYSIS_KINDS, MissingPrerequisiteError, artifact_payload, case_profile_data,
    latest_artifact, latest_artifact_data, run_analysis,
)
from petition.config import get_settings
from petition.consolidation import run_case_consolidation
from petition.criteria import CRITERION_IDS
from petition.db import get_session, init_db
from petition.denial import prepare_denial_context, stream_denial_probability
from petition.enricher import FetchError, fetch_page_text
from petition.extraction import DocumentTextError, extract_text
from petition.llm import LLMCallError, LLMClient
from petition.logging_config import configure_logging
from petition.models import DOCUMENT_CATEGORIES, Case, Document, Recommender
from petition.recommenders import (
    ImportValidationError, apply_changes, create_recommenders, diff_recommender, extract_recommender,
    improve_context, map_columns, parse_table,
)
from petition.routing import add_manual_route, remove_route, sync_routing
from petition.schemas import (
    CaseCreate,
    CaseOut,
    CriterionRequest,
    DocumentDetail,
    DocumentOut,
    DocumentUpdate,
    ExtractUrlRequest,
    ImportRequest,
    ImproveContextRequest,
    MergeRequest,
    ProfileUpdate,
    PromptUpdate,
    RecommenderCreate,
    RecommenderOut,
    RecommenderUpdate,
    RoutingUpdate,
)
from petition.streaming import sse_event
from petition.verification import (
    VerificationInProgressError, stream_document_verification, verification_locks,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(
    title="Petition",
    version="0.1.0",
    description=(
        "Evidence aggregation API for EB-1A petitions. Verify documents against the ten "
        "regulatory criteria, route evidence, track the document checklist, and synthesize "
        "case-level analyses. Every case route requires an X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Cases", "description": "Create and list cases; applicant profile."},
        {"name": "Documents", "description": "Upload and manage case documents."},
        {"name": "Verification", "description": "Per-criterion evidence verification (SSE streams)."},
        {"name": "Routing", "description": "Which documents support which criteria."},
        {"name": "Checklist", "description": "Document checklist with strength classification."},
        {"name": "Analysis", "description": "Strength evaluation, gap analysis, strategy, consolidation, denial risk."},
        {"name": "Recommenders", "description": "Recommenders: CRUD, CSV/XLSX import, extraction, merge."},
        {"name": "Prompts", "description": "Editable agent prompts."},
        {"name": "Admin", "description": "Service health."},
    ],
)


@app.exception_handler(MissingPrerequisiteError)
async def _missing_prerequisite(request: Request, exc: MissingPrerequisiteError):
    return JSONResponse({"detail": str(exc), "missing": exc.missing}, status_code=409)


@app.exception_handler(VerificationInProgressError)
async def _verification_in_progress(request: Request, exc: VerificationInProgressError):
    return JSONResponse({"detail": str(exc)}, status_code=409)


@app.exception_handler(ImportValidationError)
async def _import_invalid(request: Request, exc: ImportValidationError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(DocumentTextError)
async def _document_text(request: Request, exc: DocumentTextError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(services.InsufficientTextError)
async def _insufficient_text(request: Request, exc: services.InsufficientTextError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(LLMCallError)
async def _llm_failed(request: Request, exc: LLMCallError):
    log.warning("LLM call failed on %s: %s", request.url.path, exc)
    return JSONResponse({"detail": "AI service request failed"}, status_code=502)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(401, "Unauthorized")
    return x_user_id


def owned_case(case_id: int, user_id: str = Depends(current_user),
               session: Session = Depends(db_session)) -> Case:
    case = session.execute(
        select(Case).where(Case.id == case_id, Case.owner_id == user_id)
    ).scalars().first()
    if case is None:
        raise HTTPException(404, "Case not found")
    return case


def _get_or_404(session: Session, model, entity_id: int, case_id: int, label: str = "Entity"):
    obj = session.execute(
        select(model).where(model.id == entity_id, model.case_id == case_id)
    ).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _sse(stream) -> StreamingResponse:
    return StreamingResponse(stream, media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Routes: Cases & profile
# ---------------------------------------------------------------------------


@app.post("/api/cases", response_model=CaseOut, status_code=201,
          tags=["Cases"], summary="Create a case owned by the calling user")
async def create_case(body: CaseCreate, user_id: str = Depends(current_user),
                      session: Session = Depends(db_session)):
    case = Case(owner_id=user_id, name=body.name)
    session.add(case)
    session.commit()
    return services.case_summary(session, case)


@app.get("/api/cases", response_model=list[CaseOut], tags=["Cases"], summary="List the caller's cases")
async def list_cases(user_id: str = Depends(current_user), session: Session = Depends(db_session)):
    cases = session.execute(
        select(Case).where(Case.owner_id == user_id).order_by(Case.id.desc())
    ).scalars().all()
    return [services.case_summary(session, c) for c in cases]


@app.get("/api/cases/{case_id}", response_model=CaseOut, tags=["Cases"], summary="Get one case")
async def get_case(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return services.case_summary(session, case)


@app.get("/api/cases/{case_id}/profile", tags=["Cases"], summary="Get the applicant profile")
async def get_profile(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return {"data": case_profile_data(session, case.id)}


@app.put("/api/cases/{case_id}/profile", tags=["Cases"],
         summary="Merge top-level keys into the applicant profile")
async def update_profile(body: ProfileUpdate, case: Case = Depends(owned_case),
                         session: Session = Depends(db_session)):
    merged = services.merge_profile(session, case.id, body.data)
    session.commit()
    return {"data": merged}


# ---------------------------------------------------------------------------
# Routes: Documents
# ---------------------------------------------------------------------------


@app.get("/api/cases/{case_id}/documents", response_model=list[DocumentOut],
         tags=["Documents"], summary="List case documents, newest first")
async def list_documents(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    docs = session.execute(
        select(Document).where(Document.case_id == case.id).order_by(Document.created_at.desc(), Document.id.desc())
    ).scalars().all()
    return [services.document_summary(d) for d in docs]


@app.post("/api/cases/{case_id}/documents", response_model=DocumentDetail, status_code=201,
          tags=["Documents"], summary="Upload a document (PDF, DOCX, HTML, XLSX or text)")
async def upload_document(file: UploadFile = File(...), category: str | None = Form(default=None),
                          case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    if category is not None and category not in DOCUMENT_CATEGORIES:
        raise HTTPException(400, "Unknown document category")
    doc = await services.create_document(
        session, case, file.filename or "upload.txt", await file.read(),
        category=category, client=LLMClient(), prompts=services.load_prompts(session),
    )
    session.commit()
    return services.document_detail(doc)


@app.get("/api/cases/{case_id}/documents/{doc_id}", response_model=DocumentDetail,
         tags=["Documents"], summary="Get one document with its text")
async def get_document(doc_id: int, case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return services.document_detail(_get_or_404(session, Document, doc_id, case.id, "Document"))


@app.put("/api/cases/{case_id}/documents/{doc_id}", response_model=DocumentDetail,
         tags=["Documents"], summary="Update status, category, name or recommender link")
async def update_document(doc_id: int, body: DocumentUpdate, case: Case = Depends(owned_case),
                          session: Session = Depends(db_session)):
    doc = _get_or_404(session, Document, doc_id, case.id, "Document")
    services.apply_updates(doc, body.model_dump(), services.DOCUMENT_UPDATE_FIELDS)
    if "recommender_id" in body.model_fields_set:
        if body.recommender_id is not None:
            _get_or_404(session, Recommender, body.recommender_id, case.id, "Recommender")
        doc.recommender_id = body.recommender_id
    session.commit()
    return services.document_detail(doc)


@app.delete("/api/cases/{case_id}/documents/{doc_id}", tags=["Documents"],
            summary="Delete a document with its verdicts and routing entries")
async def delete_document(doc_id: int, case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    services.delete_document(session, _get_or_404(session, Document, doc_id, case.id, "Document"))
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Evidence verification
# ---------------------------------------------------------------------------


@app.get("/api/cases/{case_id}/evidence-verify", tags=["Verification"],
         summary="Latest verdicts grouped by document")
async def get_evidence_results(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return services.evidence_results(session, case.id)


@app.post("/api/cases/{case_id}/evidence-verify", tags=["Verification"],
          summary="Upload files and verify each against all criteria (SSE progress stream)")
async def verify_uploads(files: list[UploadFile] = File(...), case: Case = Depends(owned_case)):
    max_files = get_settings().max_verify_files
    if not files:
        raise HTTPException(400, "No files provided")
    if len(files) > max_files:
        raise HTTPException(400, f"Max {max_files} files")
    uploads = [(f.filename or "upload.txt", await f.read()) for f in files]
    case_id = case.id
    client = LLMClient()

    async def stream():
        session = None
        try:
            session = get_session()
            case_obj = session.get(Case, case_id)
            prompts = services.load_prompts(session)
            context = services.verification_context(session, case_obj)
            for name, content in uploads:
                try:
                    doc = await services.create_document(
                        session, case_obj, name, content, client=client, prompts=prompts,
                    )
                    services.check_verifiable(doc)
                    session.commit()
                except (DocumentTextError, services.InsufficientTextError) as exc:
                    session.rollback()
                    yield sse_event({"type": "doc_error", "name": name, "error": str(exc)})
                    continue

                yield sse_event({"type": "doc_started", "documentId": doc.id, "name": name})
                try:
                    with verification_locks.hold(case_id, doc.id):
                        async for event in stream_document_verification(
                            session, doc, client, context, source="bulk", prompts=prompts,
                        ):
                            yield sse_event(event)
                    sync_routing(session, case_id)
                    session.commit()
                except Exception as exc:
                    log.warning("Evidence verification failed for %s: %s", name, exc)
                    session.rollback()
                    yield sse_event({"type": "doc_error", "documentId": doc.id, "name": name,
                                     "error": "Verification failed"})
            yield sse_event({"type": "all_complete"})
        except Exception as exc:
            log.warning("Evidence verification stream failed for case %s: %s", case_id, exc)
            if session is not None:
                session.rollback()
            yield sse_event({"type": "error", "error": "Verification failed"})
        finally:
            if session is not None:
                session.close()

    return _sse(stream())


@app.post("/api/cases/{case_id}/evidence-verify/{doc_id}", tags=["Verification"],
          summary="Re-verify one document against all criteria (SSE progress stream)")
async def reverify_document(doc_id: int, case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    doc = _get_or_404(session, Document, doc_id, case.id, "Document")
    services.check_verifiable(doc)
    case_id = case.id
    client = LLMClient()
    if verification_locks.is_locked(case_id, doc_id):
        raise VerificationInProgressError(f"Document {doc_id} is already being verified")

    async def stream():
        stream_session = None
        try:
            with verification_locks.hold(case_id, doc_id):
                stream_session = get_session()
                case_obj = stream_session.get(Case, case_id)
                document = stream_session.get(Document, doc_id)
                yield sse_event({"type": "doc_started", "documentId": doc_id, "name": document.name})
                async for event in stream_document_verification(
                    stream_session, document, client, services.verification_context(stream_session, case_obj),
                    source="bulk", prompts=services.load_prompts(stream_session),
                ):
                    yield sse_event(event)
                sync_routing(stream_session, case_id)
                stream_session.commit()
            yield sse_event({"type": "all_complete"})
        except Exception as exc:
            log.warning("Re-verification failed for document %s: %s", doc_id, exc)
            if stream_session is not None:
                stream_session.rollback()
            yield sse_event({"type": "error", "error": "Verification failed"})
        finally:
            if stream_session is not None:
                stream_session.close()

    return _sse(stream())


@app.post("/api/cases/{case_id}/criterion", tags=["Verification"],
          summary="Check one document against a single criterion (multipart upload or JSON)")
async def verify_criterion_route(request: Request, case: Case = Depends(owned_case),
                                 session: Session = Depends(db_session)):
    content_type = request.headers.get("content-type", "")
    client = LLMClient()
    prompts = services.load_prompts(session)
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        criterion_id = str(form.get("criterionId") or "")
        upload = form.get("file")
        if criterion_id not in CRITERION_IDS:
            raise HTTPException(400, "Invalid criterion ID")
        if upload is None or isinstance(upload, str):
            raise HTTPException(400, "No file provided")
        doc = await services.create_document(
            session, case, upload.filename or "upload.txt", await upload.read(), client=client, prompts=prompts,
        )
    else:
        try:
            body = CriterionRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            raise HTTPException(400, "Invalid criterion request") from exc
        criterion_id = body.criterion_id
        doc = _get_or_404(session, Document, body.document_id, case.id, "Document")

    with verification_locks.hold(case.id, doc.id):
        result = await services.verify_single_criterion(
            session, case, doc, criterion_id, client, prompts,
        )
    if result is None:
        session.rollback()
        raise HTTPException(502, "AI service request failed")
    session.commit()
    return {
        "criterionId": criterion_id,
        "documentId": doc.id,
        "verification": {
            "recommendation": result["recommendation"],
            "score": result["score"],
            "tier": result["tier"],
            "verified_claims": result["verified_claims"],
            "red_flags": result["red_flags"],
        },
    }


# ---------------------------------------------------------------------------
# Routes: Routing & checklist
# ---------------------------------------------------------------------------


@app.get("/api/cases/{case_id}/criteria-routing", tags=["Routing"],
         summary="Documents routed to each criterion, best first")
async def get_routing(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return services.criteria_routing(session, case.id)


@app.put("/api/cases/{case_id}/criteria-routing", tags=["Routing"],
         summary="Pin, remove, or recompute routing entries")
async def update_routing(body: RoutingUpdate, case: Case = Depends(owned_case),
                         session: Session = Depends(db_session)):
    if body.action == "re-route":
        sync_routing(session, case.id)
    else:
        if body.document_id is None or body.criterion is None:
            raise HTTPException(400, "documentId and criterion are required")
        _get_or_404(session, Document, body.document_id, case.id, "Document")
        if body.action == "add":
            add_manual_route(session, case.id, body.document_id, body.criterion)
        elif not remove_route(session, case.id, body.document_id, body.criterion):
            raise HTTPException(404, "Routing entry not found")
    session.commit()
    return services.criteria_routing(session, case.id)


@app.get("/api/cases/{case_id}/document-checklist", tags=["Checklist"],
         summary="Checklist of required documents with strength status")
async def get_checklist(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return services.case_checklist(session, case.id).to_dict()


@app.post("/api/cases/{case_id}/documents/verify", tags=["Checklist"],
          summary="Re-verify all current documents and refresh the checklist")
async def verify_documents(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return await services.verify_all_documents(session, case, LLMClient(), services.load_prompts(session))


# ---------------------------------------------------------------------------
# Routes: Analyses
# ---------------------------------------------------------------------------


def _analysis_kind(kind: str) -> str:
    key = kind.replace("-", "_")
    if key not in ANALYSIS_KINDS:
        raise HTTPException(404, f"Unknown analysis: {kind}")
    return key


@app.post("/api/cases/{case_id}/analysis/{kind}", tags=["Analysis"],
          summary="Run strength-evaluation, gap-analysis or case-strategy")
async def run_analysis_route(kind: str, case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    key = _analysis_kind(kind)
    art = await run_analysis(session, case, key, LLMClient(), services.load_prompts(session))
    session.commit()
    return artifact_payload(art)


@app.get("/api/cases/{case_id}/analysis/{kind}", tags=["Analysis"], summary="Latest result of an analysis")
async def get_analysis(kind: str, case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    art = latest_artifact(session, case.id, _analysis_kind(kind))
    return artifact_payload(art) if art else None


@app.post("/api/cases/{case_id}/case-consolidation", tags=["Analysis"],
          summary="Consolidate all analyses into a ranked master profile")
async def consolidate(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    art = await run_case_consolidation(session, case, LLMClient(), services.load_prompts(session))
    session.commit()
    return artifact_payload(art)


@app.get("/api/cases/{case_id}/case-consolidation", tags=["Analysis"], summary="Latest consolidated profile")
async def get_consolidation(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    art = latest_artifact(session, case.id, "case_consolidation")
    return artifact_payload(art) if art else None


@app.post("/api/cases/{case_id}/denial-probability", tags=["Analysis"],
          summary="Stream a denial-probability report as partial JSON (SSE)")
async def denial_probability(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    prepared = prepare_denial_context(session, case)
    case_id = case.id
    client = LLMClient()

    async def stream():
        stream_session = None
        try:
            stream_session = get_session()
            case_obj = stream_session.get(Case, case_id)
            async for line in stream_denial_probability(
                stream_session, case_obj, prepared, client, services.load_prompts(stream_session),
            ):
                yield line
        finally:
            if stream_session is not None:
                stream_session.close()

    return _sse(stream())


@app.get("/api/cases/{case_id}/denial-probability", tags=["Analysis"], summary="Latest denial-probability report")
async def get_denial_probability(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    return latest_artifact_data(session, case.id, "denial_probability")


# ---------------------------------------------------------------------------
# Routes: Recommenders (fixed paths before parameterized)
# ---------------------------------------------------------------------------


@app.get("/api/cases/{case_id}/recommenders", response_model=list[RecommenderOut],
         tags=["Recommenders"], summary="List recommenders")
async def list_recommenders(case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    recs = session.execute(
        select(Recommender).where(Recommender.case_id == case.id).order_by(Recommender.id)
    ).scalars().all()
    return [services.recommender_summary(r) for r in recs]


@app.post("/api/cases/{case_id}/recommenders", response_model=RecommenderOut, status_code=201,
          tags=["Recommenders"], summary="Add a recommender")
async def add_recommender(body: RecommenderCreate, case: Case = Depends(owned_case),
                          session: Session = Depends(db_session)):
    rec = create_recommenders(session, case.id, [body])[0]
    session.commit()
    return services.recommender_summary(rec)


@app.post("/api/cases/{case_id}/recommenders/import/file", tags=["Recommenders"],
          summary="Parse a CSV/XLSX upload into headers and rows for mapping")
async def import_file(file: UploadFile = File(...), case: Case = Depends(owned_case)):
    headers, rows = parse_table(file.filename or "", await file.read())
    return {"headers": headers, "rows": rows}


@app.post("/api/cases/{case_id}/recommenders/import", tags=["Recommenders"],
          summary="Map imported columns with AI, or create the reviewed recommenders")
async def import_recommenders(body: ImportRequest, case: Case = Depends(owned_case),
                              session: Session = Depends(db_session)):
    if body.action == "map":
        return await map_columns(body.headers, body.rows, LLMClient(), services.load_prompts(session))
    created = create_recommenders(session, case.id, body.recommenders)
    session.commit()
    return JSONResponse({"created": len(created)}, status_code=201)


@app.post("/api/cases/{case_id}/recommenders/extract", tags=["Recommenders"],
          summary="Extract recommender details from a file upload or {url}")
async def extract_recommender_route(request: Request, case: Case = Depends(owned_case),
                                    session: Session = Depends(db_session)):
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise HTTPException(400, "No file provided")
        text = extract_text(upload.filename or "", await upload.read())
    elif content_type.startswith("application/json"):
        try:
            body = ExtractUrlRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            raise HTTPException(400, "URL is required") from exc
        try:
            text = await fetch_page_text(body.url)
        except FetchError as exc:
            raise HTTPException(422, str(exc)) from exc
    else:
        raise HTTPException(400, "Content-Type must be multipart/form-data or application/json")

    extracted = await extract_recommender(text, LLMClient(), services.load_prompts(session))
    return {"extracted": extracted, "contextNotes": {"rawText": text[:5000]}}


@app.post("/api/cases/{case_id}/recommenders/improve-context", tags=["Recommenders"],
          summary="Rewrite a draft relationship context with AI")
async def improve_context_route(body: ImproveContextRequest, case: Case = Depends(owned_case),
                                session: Session = Depends(db_session)):
    details: dict[str, Any] = dict(body.details)
    if body.recommender_id is not None:
        rec = _get_or_404(session, Recommender, body.recommender_id, case.id, "Recommender")
        details = {**services.recommender_summary(rec), **details}
        for key in ("id", "criteria_keys", "created_at", "relationship_context", "email", "phone"):
            details.pop(key, None)
    improved = await improve_context(body.draft, details, LLMClient(), services.load_prompts(session))
    return {"improved": improved}


@app.put("/api/cases/{case_id}/recommenders/{rec_id}", response_model=RecommenderOut,
         tags=["Recommenders"], summary="Update a recommender")
async def update_recommender(rec_id: int, body: RecommenderUpdate, case: Case = Depends(owned_case),
                             session: Session = Depends(db_session)):
    rec = _get_or_404(session, Recommender, rec_id, case.id, "Recommender")
    services.apply_updates(rec, body.model_dump(), services.RECOMMENDER_UPDATE_FIELDS)
    if body.criteria_keys is not None:
        rec.criteria_keys_json = json.dumps(body.criteria_keys)
    session.commit()
    return services.recommender_summary(rec)


@app.delete("/api/cases/{case_id}/recommenders/{rec_id}", tags=["Recommenders"], summary="Delete a recommender")
async def delete_recommender(rec_id: int, case: Case = Depends(owned_case), session: Session = Depends(db_session)):
    services.delete_recommender(session, _get_or_404(session, Recommender, rec_id, case.id, "Recommender"))
    session.commit()
    return {"ok": True}


@app.post("/api/cases/{case_id}/recommenders/{rec_id}/merge", tags=["Recommenders"],
          summary="Preview or apply merging extracted details into a recommender")
async def merge_recommender(rec_id: int, body: MergeRequest, case: Case = Depends(owned_case),
                            session: Session = Depends(db_session)):
    rec = _get_or_404(session, Recommender, rec_id, case.id, "Recommender")
    changes = diff_recommender(rec, body.incoming)
    if body.apply and changes:
        apply_changes(rec, changes)
        session.commit()
    return {
        "changes": [c.to_dict() for c in changes],
        "applied": body.apply and bool(changes),
        "recommender": services.recommender_summary(rec),
    }


# ---------------------------------------------------------------------------
# Routes: Prompts
# ---------------------------------------------------------------------------


@app.get("/api/prompts", tags=["Prompts"], summary="List agent prompts")
async def list_prompts(user_id: str = Depends(current_user), session: Session = Depends(db_session)):
    return services.get_prompts(session)


@app.get("/api/prompts/{key}", tags=["Prompts"], summary="Get one agent prompt")
async def get_prompt(key: str, user_id: str = Depends(current_user), session: Session = Depends(db_session)):
    found = next((p for p in services.get_prompts(session) if p["key"] == key), None)
    if found is None:
        raise HTTPException(404, f"Prompt '{key}' not found")
    return found


@app.put("/api/prompts/{key}", tags=["Prompts"], summary="Update an agent prompt's content")
async def update_prompt(key: str, body: PromptUpdate, user_id: str = Depends(current_user),
                        session: Session = Depends(db_session)):
    result = services.update_prompt(session, key, body.content)
    if result is None:
        raise HTTPException(404, f"Prompt '{key}' not found")
    return result


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Admin"], summary="Liveness check")
async def health():
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("petition.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()
