from datetime import date

from fastapi import APIRouter, HTTPException
from loguru import logger

from splitchat.deps import dispatcher, repo
from splitchat.models.schemas import (
    EQUAL_SPLIT,
    Balance,
    BudgetStatus,
    Category,
    ChatRequest,
    ChatResponse,
    CreateCategoryRequest,
    CreateExpenseRequest,
    Expense,
    SetBudgetRequest,
    UpdateExpenseRequest,
)

router = APIRouter()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    logger.info("Chat [{}]: {}", request.conversation_id, request.message)
    result = await dispatcher.process(
        request.conversation_id,
        request.message,
        repo.list_categories(),
        user_id=request.user_id,
    )
    return result.response


@router.post("/chat/reply", response_model=ChatResponse)
async def chat_reply(request: ChatRequest):
    logger.info("Chat reply [{}]: {}", request.conversation_id, request.message)
    result = await dispatcher.process_reply(
        request.conversation_id,
        request.message,
        repo.list_categories(),
        user_id=request.user_id,
    )
    return result.response


@router.delete("/chat/{conversation_id}")
def end_chat(conversation_id: str):
    dispatcher.end_conversation(conversation_id)
    return {"detail": "Conversation cleared"}


@router.get("/categories", response_model=list[Category])
def list_categories():
    return repo.list_categories()


@router.post("/categories", response_model=Category, status_code=201)
def create_category(request: CreateCategoryRequest):
    try:
        category = repo.add_category(request.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Created category {}", category.id)
    return category


@router.get("/expenses", response_model=list[Expense])
def list_expenses(limit: int | None = None):
    return repo.list_expenses(limit)


@router.post("/expenses", response_model=Expense, status_code=201)
def create_expense(request: CreateExpenseRequest):
    category_name = "Uncategorized"
    if request.category_id is not None:
        category = repo.get_category(request.category_id)
        if category is None:
            raise HTTPException(status_code=400, detail="Unknown category")
        category_name = category.name

    split = request.split or EQUAL_SPLIT
    payer_share, partner_share = split.shares(request.amount)
    expense = Expense(
        amount=request.amount,
        description=request.description or category_name,
        category_id=request.category_id,
        category_name=category_name,
        paid_by=request.paid_by,
        split=split,
        payer_share=payer_share,
        partner_share=partner_share,
        date=request.date or date.today(),
    )
    created = repo.add_expense(expense)
    logger.info("Created expense #{}", created.id)
    return created


@router.get("/expenses/{expense_id}", response_model=Expense)
def get_expense(expense_id: int):
    expense = repo.get_expense(expense_id)
    if expense is None:
        raise HTTPException(status_code=404, detail="Expense not found")
    return expense


@router.patch("/expenses/{expense_id}", response_model=Expense)
def update_expense(expense_id: int, request: UpdateExpenseRequest):
    existing = repo.get_expense(expense_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Expense not found")

    updates = request.model_dump(exclude_none=True)
    if "category_id" in updates:
        category = repo.get_category(updates["category_id"])
        if category is None:
            raise HTTPException(status_code=400, detail="Unknown category")
        updates["category_name"] = category.name
    if "amount" in updates or "split" in updates:
        split = request.split or existing.split
        amount = updates.get("amount", existing.amount)
        updates["split"] = split
        updates["payer_share"], updates["partner_share"] = split.shares(amount)
    updated = repo.update_expense(expense_id, **updates)
    logger.info("Updated expense #{}", expense_id)
    return updated


@router.delete("/expenses/{expense_id}")
def delete_expense(expense_id: int):
    if not repo.delete_expense(expense_id):
        raise HTTPException(status_code=404, detail="Expense not found")
    logger.info("Deleted expense #{}", expense_id)
    return {"detail": "Expense deleted"}


@router.post("/settle")
def settle():
    count = repo.settle_all()
    logger.info("Settled {} expenses", count)
    return {"settled_count": count}


@router.get("/balance", response_model=Balance)
def get_balance(user_id: str | None = None):
    return repo.balance(user_id)


@router.get("/budgets", response_model=list[BudgetStatus])
def list_budgets():
    return repo.list_budgets()


@router.get("/budgets/{category_id}", response_model=BudgetStatus)
def get_budget(category_id: str):
    if repo.get_category(category_id) is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return repo.budget_status(category_id)


@router.put("/budgets/{category_id}", response_model=BudgetStatus)
def set_budget(category_id: str, request: SetBudgetRequest):
    if repo.get_category(category_id) is None:
        raise HTTPException(status_code=404, detail="Category not found")
    repo.set_budget(category_id, request.limit)
    logger.info("Set budget for {} to {}", category_id, request.limit)
    return repo.budget_status(category_id)
