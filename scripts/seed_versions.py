import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import argparse
import yaml
from sqlalchemy.orm import Session
from sqlalchemy.future import select
from core.db import get_sync_engine, Base
from models import ModelVersion
from schemas.version import ModelVersionCreate

# versions.yaml 예:
# fraud-detector:
#   - version: "1.2.0"
#     artifact_uri: s3://models/fraud-detector/1.2.0
#     description: baseline


def load_catalog(path):
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    versions = []
    for model_name, entries in data.items():
        for entry in entries or []:
            versions.append(ModelVersionCreate(model_name=model_name, **entry))
    return versions


def seed(versions, engine):
    Base.metadata.create_all(bind=engine)
    added = 0
    with Session(bind=engine) as session:
        for v in versions:
            exists = session.execute(
                select(ModelVersion).where(ModelVersion.model_name == v.model_name, ModelVersion.version == v.version)
            ).scalars().first()
            # 이미 있는 (model_name, version)은 건너뜀
            if exists:
                continue
            session.add(ModelVersion(**v.model_dump()))
            added += 1
        session.commit()
    return added


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed model versions from a YAML catalog")
    parser.add_argument("path", nargs="?", default="versions.yaml")
    parser.add_argument("--db-url", default=None)
    args = parser.parse_args()

    versions = load_catalog(args.path)
    added = seed(versions, get_sync_engine(args.db_url))
    print(f"{args.path} → DB 반영 완료 ({added}/{len(versions)} versions added)")
