from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Literal, Optional
from jobfeed.database import get_db
from jobfeed.models import JobPosting
from jobfeed.schemas import JobResponse, JobListResponse, JobUpdate
from jobfeed.auth import require_admin

router = APIRouter()


@router.get("", response_model=JobListResponse)
async def list_jobs(
    status: Optional[Literal["active", "inactive"]] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    query = select(JobPosting)
    count_query = select(func.count(JobPosting.id))

    if status:
        query = query.where(JobPosting.status == status)
        count_query = count_query.where(JobPosting.status == status)

    if search:
        search_filter = (
            JobPosting.title.ilike(f"%{search}%")
            | JobPosting.company.ilike(f"%{search}%")
            | JobPosting.location.ilike(f"%{search}%")
        )
        query = query.where(search_filter)
        count_query = count_query.where(search_filter)

    total_result = await db.execute(count_query)
    total = total_result.scalar() or 0

    query = query.order_by(JobPosting.created_at.desc(), JobPosting.id)
    query = query.offset((page - 1) * per_page).limit(per_page)

    result = await db.execute(query)
    jobs = result.scalars().all()

    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    result = await db.execute(select(JobPosting).where(JobPosting.id == job_id))
    job = result.scalar_one_or_none()

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobResponse.model_validate(job)


@router.patch("/{job_id}", response_model=JobResponse)
async def update_job(
    job_id: str,
    update: JobUpdate,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    result = await db.execute(select(JobPosting).where(JobPosting.id == job_id))
    job = result.scalar_one_or_none()

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    update_data = update.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in update_data.items():
        setattr(job, field, value)

    await db.commit()
    await db.refresh(job)

    return JobResponse.model_validate(job)
